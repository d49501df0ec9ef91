"""Host lifecycle: models, state machine, persistence and recovery."""
