"""Room presence module.

Provides:
    - PresenceManager: join, relay, leave, heartbeat and eviction.
    - Occupant / Peer: records stored in and read from the room hashes.
"""
