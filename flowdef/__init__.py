"""Flow definitions: tasks, links, loops, retries, error handlers, expressions, mappers and resolvers."""

__version__ = "0.1.0"

__all__ = ["activity", "definition", "expression", "mapper", "resolve", "serialization"]