"""Call client: negotiation, signaling and live transcription."""
