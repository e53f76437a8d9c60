"""Pure domain layer: clock, value objects and DTOs."""
