"""Turn input preparation: hints, history filtering, profile summary."""
