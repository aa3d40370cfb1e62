"""Two-party call rooms: signaling server, negotiation and live transcripts."""

__version__ = "0.1.0"
