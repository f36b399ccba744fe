"""Infrastructure: storage, timers and HTTP."""
