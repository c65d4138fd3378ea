# Importing the models registers them on Base.metadata (Alembic, create_all)
from wikiblocks.models.block import Block
from wikiblocks.models.history import HistoryRecord
from wikiblocks.models.page import Page

__all__ = ["Block", "HistoryRecord", "Page"]
