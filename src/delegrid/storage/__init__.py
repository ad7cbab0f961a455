"""Relational storage: engine policy, tables, migrations."""
