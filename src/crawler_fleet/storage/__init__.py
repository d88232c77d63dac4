"""SQLite storage layer: engine policy, schema migrations, ORM tables."""
