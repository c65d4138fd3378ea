"""
WikiBlocks Backend — Page Service
===================================

What:  CRUD for pages, including per-owner unique slugs and page nesting.
Why:   Pages own blocks and history; ownership checks and slug rules are
       enforced here so every route gets them for free.
How:   Each mutation runs in one transaction (mutation_scope). Reads open a
       short session and translate storage failures into DatabaseError.

Slug Generation:
    "Sprint Notes" → "sprint-notes", then "sprint-notes-2", "-3", ... up to
    slug_max_attempts candidates, then "sprint-notes-<8 hex chars>".
    Only the owner's own pages are considered; the page being renamed is
    excluded so keeping a title never changes its slug.

Concurrent Creates:
    The free-slug check and the insert are separate statements, so two
    requests can pick the same candidate. The loser's insert violates
    uq_pages_owner_slug; the whole transaction is then re-run, which picks
    the next free candidate. The last run uses a random suffix outright.

Nesting:
    parent_id must name another page of the same owner. Moves that would
    make a page its own ancestor are rejected. Deleting a page moves its
    children to the top level.
"""

import logging
import secrets
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wikiblocks.database import mutation_scope
from wikiblocks.exceptions import DatabaseError, NotFoundError, ValidationError
from wikiblocks.models.block import Block
from wikiblocks.models.page import Page
from wikiblocks.schemas.page import PageCreate, PageTreeNode, PageUpdate
from wikiblocks.services.history_store import HistoryStore
from wikiblocks.services.queries import load_owned_page
from wikiblocks.utils import require_id, slugify

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Untitled"
DEFAULT_ICON = "📄"

_UPDATABLE_FIELDS = ("title", "parent_id", "content", "icon", "cover_image", "is_published")

T = TypeVar("T")


class PageService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: HistoryStore,
        slug_max_attempts: int = 50,
    ):
        self._session_factory = session_factory
        self._store = store
        self._slug_max_attempts = max(slug_max_attempts, 1)

    # ── Slugs ─────────────────────────────────────────────────────────────

    async def _slug_taken(
        self, session: AsyncSession, owner_id: int, slug: str, exclude_id: Optional[int]
    ) -> bool:
        stmt = select(Page.id).where(Page.owner_id == owner_id, Page.slug == slug)
        if exclude_id is not None:
            stmt = stmt.where(Page.id != exclude_id)
        result = await session.execute(stmt.limit(1))
        return result.scalar() is not None

    async def _unique_slug(
        self,
        session: AsyncSession,
        owner_id: int,
        title: Optional[str],
        exclude_id: Optional[int] = None,
        randomize: bool = False,
    ) -> str:
        base = slugify(title)
        if not randomize:
            for attempt in range(1, self._slug_max_attempts + 1):
                candidate = base if attempt == 1 else f"{base}-{attempt}"
                if not await self._slug_taken(session, owner_id, candidate, exclude_id):
                    return candidate
        # Every numbered suffix is in use; fall back to a random one
        return f"{base}-{secrets.token_hex(4)}"

    async def _run_with_slug_retry(
        self,
        action: str,
        operation: Callable[[AsyncSession, bool], Awaitable[T]],
        **context: Any,
    ) -> T:
        """
        Run `operation(session, randomize)` in its own transaction, re-running
        it when a concurrent writer took the chosen slug first.

        Runs slug_max_attempts times with numbered candidates, then once
        more with a random suffix. Only that last run's failure surfaces,
        as FatalTransactionError.
        """
        for run in range(1, self._slug_max_attempts + 1):
            try:
                async with mutation_scope(
                    self._session_factory, action, passthrough=(IntegrityError,), **context
                ) as session:
                    return await operation(session, False)
            except IntegrityError as e:
                logger.info(
                    f"{action}: slug taken concurrently, retrying ({run}/{self._slug_max_attempts})",
                    extra={**context, "error": type(e).__name__},
                )

        async with mutation_scope(self._session_factory, action, **context) as session:
            return await operation(session, True)

    # ── Nesting ───────────────────────────────────────────────────────────

    async def _check_parent(
        self,
        session: AsyncSession,
        owner_id: int,
        parent_id: Any,
        page_id: Optional[int] = None,
    ) -> Optional[int]:
        """Validate a parent page id; None means top level."""
        if parent_id is None:
            return None
        parent_id = require_id(parent_id, "parent_id")
        if parent_id == page_id:
            raise ValidationError(message="A page cannot be its own parent", field="parent_id")
        try:
            parent = await load_owned_page(session, owner_id, parent_id)
        except NotFoundError:
            raise ValidationError(message="Parent page not found", field="parent_id")

        if page_id is not None:
            seen = set()
            ancestor = parent.parent_id
            while ancestor is not None and ancestor not in seen:
                if ancestor == page_id:
                    raise ValidationError(
                        message="A page cannot be moved under its own descendant",
                        field="parent_id",
                    )
                seen.add(ancestor)
                result = await session.execute(
                    select(Page.parent_id).where(Page.id == ancestor, Page.owner_id == owner_id)
                )
                ancestor = result.scalar()
        return parent_id

    # ── Mutations ─────────────────────────────────────────────────────────

    async def create_page(self, owner_id: Any, data: Optional[PageCreate] = None) -> Page:
        owner_id = require_id(owner_id, "owner_id")
        data = data or PageCreate()
        title = (data.title or "").strip() or DEFAULT_TITLE

        async def insert(session: AsyncSession, randomize: bool) -> Page:
            page = Page(
                owner_id=owner_id,
                parent_id=await self._check_parent(session, owner_id, data.parent_id),
                title=title,
                slug=await self._unique_slug(session, owner_id, title, randomize=randomize),
                content=data.content or {},
                icon=data.icon or DEFAULT_ICON,
                cover_image=data.cover_image,
                is_published=data.is_published,
            )
            session.add(page)
            await session.flush()
            return page

        page = await self._run_with_slug_retry("create page", insert, owner_id=owner_id)
        logger.info(f"Created page {page.id} ({page.slug})", extra={"owner_id": owner_id})
        return page

    async def update_page(
        self, owner_id: Any, page_id: Any, changes: Union[PageUpdate, Dict[str, Any]]
    ) -> Page:
        """
        Apply the fields present in `changes`.

        A changed title regenerates the slug. Explicit nulls reset title and
        icon to their defaults, clear cover_image, and move the page to the
        top level for parent_id.
        """
        owner_id = require_id(owner_id, "owner_id")
        page_id = require_id(page_id, "page_id")
        if isinstance(changes, PageUpdate):
            changes = changes.model_dump(exclude_unset=True)
        updates = {k: v for k, v in (changes or {}).items() if k in _UPDATABLE_FIELDS}
        if not updates:
            raise ValidationError(message="No page fields to update", field="changes")

        async def apply(session: AsyncSession, randomize: bool) -> Page:
            page = await load_owned_page(session, owner_id, page_id)
            pending = dict(updates)

            if "title" in pending:
                title = (pending.pop("title") or "").strip() or DEFAULT_TITLE
                if title != page.title:
                    page.slug = await self._unique_slug(
                        session, owner_id, title, exclude_id=page.id, randomize=randomize
                    )
                    page.title = title
            if "parent_id" in pending:
                page.parent_id = await self._check_parent(
                    session, owner_id, pending.pop("parent_id"), page_id=page.id
                )
            if "icon" in pending:
                page.icon = pending.pop("icon") or DEFAULT_ICON
            if "content" in pending:
                page.content = pending.pop("content") or {}
            if "is_published" in pending:
                is_published = pending.pop("is_published")
                if is_published is not None:
                    page.is_published = bool(is_published)
            if "cover_image" in pending:
                page.cover_image = pending.pop("cover_image")
            await session.flush()
            return page

        return await self._run_with_slug_retry(
            "update page", apply, owner_id=owner_id, page_id=page_id
        )

    async def delete_page(self, owner_id: Any, page_id: Any) -> None:
        """Remove a page together with its blocks and its entire history."""
        owner_id = require_id(owner_id, "owner_id")
        page_id = require_id(page_id, "page_id")

        async with mutation_scope(
            self._session_factory, "delete page", owner_id=owner_id, page_id=page_id
        ) as session:
            page = await load_owned_page(session, owner_id, page_id)
            # Explicit statements so SQLite (no FK enforcement by default)
            # behaves like PostgreSQL's ON DELETE CASCADE / SET NULL
            await session.execute(
                update(Page)
                .where(Page.parent_id == page.id)
                .values(parent_id=None)
                .execution_options(synchronize_session=False)
            )
            await self._store.delete_for_page(session, page.id)
            await session.execute(
                delete(Block)
                .where(Block.page_id == page.id)
                .execution_options(synchronize_session=False)
            )
            await session.delete(page)

        logger.info(f"Deleted page {page_id}", extra={"owner_id": owner_id})

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get_page(self, owner_id: Any, page_id: Any) -> Page:
        owner_id = require_id(owner_id, "owner_id")
        page_id = require_id(page_id, "page_id")
        try:
            async with self._session_factory() as session:
                return await load_owned_page(session, owner_id, page_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to load page {page_id}: {e}")
            raise DatabaseError(context={"page_id": page_id})

    async def get_page_by_slug(self, owner_id: Any, slug: str) -> Page:
        owner_id = require_id(owner_id, "owner_id")
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Page).where(Page.owner_id == owner_id, Page.slug == slug)
                )
                page = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Failed to load page by slug '{slug}': {e}")
            raise DatabaseError(context={"slug": slug})
        if page is None:
            raise NotFoundError(resource="page", resource_id=slug)
        return page

    async def list_pages(
        self,
        owner_id: Any,
        published: Optional[bool] = None,
        parent_id: Optional[Any] = None,
    ) -> List[Page]:
        """
        The owner's pages, newest first.

        With `parent_id` only that page's direct children are listed; the
        parent itself must belong to the owner.
        """
        owner_id = require_id(owner_id, "owner_id")
        stmt = select(Page).where(Page.owner_id == owner_id)
        if parent_id is not None:
            parent_id = require_id(parent_id, "parent_id")
            await self.get_page(owner_id, parent_id)
            stmt = stmt.where(Page.parent_id == parent_id)
        if published is not None:
            stmt = stmt.where(Page.is_published == published)
        stmt = stmt.order_by(Page.created_at.desc(), Page.id.desc())
        return await self._fetch_pages(stmt)

    async def get_page_tree(self, owner_id: Any) -> List[PageTreeNode]:
        """
        All of the owner's pages nested under their parents.

        Built from one query. A page whose parent is missing is shown at the
        top level, and a corrupt parent cycle is broken at the page that
        would repeat.
        """
        owner_id = require_id(owner_id, "owner_id")
        pages = await self._fetch_pages(
            select(Page)
            .where(Page.owner_id == owner_id)
            .order_by(Page.created_at.desc(), Page.id.desc())
        )
        nodes = {p.id: PageTreeNode.model_validate(p) for p in pages}
        children: Dict[Optional[int], List[PageTreeNode]] = {}
        for node in nodes.values():
            parent = node.parent_id if node.parent_id in nodes else None
            children.setdefault(parent, []).append(node)

        placed = set()

        def attach(node: PageTreeNode) -> PageTreeNode:
            placed.add(node.id)
            node.children = [attach(c) for c in children.get(node.id, []) if c.id not in placed]
            return node

        roots = [attach(n) for n in children.get(None, [])]
        # Pages caught in a parent cycle never reach a root
        for node in nodes.values():
            if node.id not in placed:
                roots.append(attach(node))
        return roots

    async def search_pages(self, owner_id: Any, query: Optional[str]) -> List[Page]:
        """Case-insensitive title search; the query needs at least 2 characters."""
        owner_id = require_id(owner_id, "owner_id")
        term = (query or "").strip()
        if len(term) < 2:
            raise ValidationError(
                message="Search query must be at least 2 characters",
                field="q",
            )
        stmt = (
            select(Page)
            .where(Page.owner_id == owner_id, Page.title.icontains(term, autoescape=True))
            .order_by(Page.updated_at.desc(), Page.id.desc())
        )
        return await self._fetch_pages(stmt)

    async def _fetch_pages(self, stmt) -> List[Page]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Failed to list pages: {e}")
            raise DatabaseError()
