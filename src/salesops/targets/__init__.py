"""Target progress state machine."""
