"""
stagedb — stage nested JSON into per-dataset SQLite, query it with SQL.

The document shapes the schema. The caller writes the SQL.

Domains:
  compile/       document → tables: naming, inference, insertion, pagination
  retrieve/      query side: SQL gate + authorizer, chunked values
  core.py        infrastructure: connections, transactions, _meta, _ops
  introspect.py  table discovery from sqlite_master
  registry.py    access id → database path
  dataset.py     process / query / schema / delete
"""
