"""Command-line interface: load, run, trades, health."""
