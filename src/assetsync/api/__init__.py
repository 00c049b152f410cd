"""Read-only HTTP view of published asset state (consumed by mint tooling)."""
