"""Access module -- contacts, interactions, and the relationship map.

Provides SQLAlchemy models (Contact, Interaction), Pydantic schemas,
AccessRepository for async CRUD, pure filter/stats helpers, and the
connection-map layout used by the network view.
"""
