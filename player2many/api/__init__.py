"""
FastAPI transport surface for the signaling relay.
"""
