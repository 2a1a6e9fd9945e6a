"""Database layer: models, connection management and the entity store."""
