"""Pure domain layer: DTOs, catalog types and the injectable clock."""
