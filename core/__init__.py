"""Engine contract, session orchestration, lifecycle and errors."""
