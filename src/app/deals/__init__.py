"""Pipeline module -- deals, their filters and stats, and the home dashboard.

Provides the Deal model, Pydantic schemas, DealRepository for async CRUD,
pure filter/sort helpers, and the weekly dashboard summary.
"""
