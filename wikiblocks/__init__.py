"""
WikiBlocks Backend — Application Package Initializer
======================================================

What: Block-based notes/wiki backend with per-page version history.

Architecture Note:

    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │         Services (Business Logic)   │  ← Ownership, slugs, history
    ├──────────────────┬──────────────────┤
    │  History Queue   │  History Store   │  ← Best-effort vs in-transaction writes
    ├──────────────────┴──────────────────┤
    │       Models & Schemas (Data)       │  ← SQLAlchemy ORM + Pydantic
    ├─────────────────────────────────────┤
    │        Database (Persistence)       │  ← Async SQLAlchemy sessions
    └─────────────────────────────────────┘
"""

__version__ = "1.0.0"
