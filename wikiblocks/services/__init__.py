# Services package init
"""
WikiBlocks Backend — Services Layer
=====================================

What:  Business logic layer sitting between routes (HTTP) and database (persistence).
Why:   Separation of concerns: routes handle HTTP, services handle business rules.
How:   Services receive a session factory (and a clock where time matters)
       at construction; dependencies.build_services wires them together.

Service Inventory:
    - PageService: Page CRUD with per-owner unique slugs
    - BlockService: Block CRUD, bulk save, reorder, snapshot restore
    - HistoryRecorder: Turns block mutations into history records
    - HistoryWriteQueue: Background, retrying writer for best-effort records
    - TimelineService: History listings and page-at-history reconstruction
    - RetentionService: Deletes history older than a retention window
    - HistoryStore: SQL for the block_history table, shared by the above
"""
