"""Pure domain layer: value objects, clock, chain resolution. No I/O."""
