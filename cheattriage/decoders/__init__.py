"""Pure parsers for the low-level artifacts the probes read."""
