"""
Interactive CipherChat peer.
"""
