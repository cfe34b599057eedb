"""Round engine: state machine, vote tally, scheduler and their adapters."""
