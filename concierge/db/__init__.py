"""Database clients and connections.

Imports are intentionally NOT eagerly loaded here to avoid pulling in
redis during test collection.
Use explicit imports: ``from concierge.db.postgres import Base``, etc.
"""
