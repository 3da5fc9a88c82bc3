"""Background run job plane: store, state machine, dispatcher, watchdog, worker loop."""
