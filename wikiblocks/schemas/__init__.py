# Schemas package init
"""
WikiBlocks Backend — API Schemas Package
==========================================

Pydantic request/response models, one module per resource:
    - page.py:     page create/update/detail/list
    - block.py:    block create/update, bulk save, reorder
    - history.py:  history entries, timeline, snapshots, restore, cleanup
    - common.py:   error envelope and health report
"""
