"""Integration scenarios spanning the store, the step function and the CLI."""
