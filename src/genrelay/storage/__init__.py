"""SQLite storage: ORM tables, engine policy, migrations."""
