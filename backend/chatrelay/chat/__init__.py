"""Real-time relay: presence, room membership, connection lifecycle and message fan-out."""
