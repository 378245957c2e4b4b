"""
Blind WebSocket relay and public key registry.
"""
