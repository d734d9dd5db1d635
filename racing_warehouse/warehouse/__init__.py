"""
Warehouse layer.

  relations         source and relation registry (``UpsertSpec``, ``SOURCES``)
  sqlite_warehouse  SQLite bulk load, relation management, deadlines
  upsert            the generic merge executor
"""
