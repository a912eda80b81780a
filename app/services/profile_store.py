"""Profile store backed by the ``profiles`` table."""

import asyncio
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import BadRequestException, ProfileStoreError
from app.core.security import TokenPurpose
from app.models.profiles import profiles

logger = structlog.get_logger(__name__)

SECURITY_COLUMNS = frozenset(
    {
        "email_verification_token",
        "email_verification_expires",
        "reset_token",
        "reset_token_expiry",
    }
)


class TokenCollision(Exception):
    """A freshly generated token digest already exists on another profile."""


def public_view(record: dict[str, Any]) -> dict[str, Any]:
    """Profile record without security token fields."""
    return {key: value for key, value in record.items() if key not in SECURITY_COLUMNS}


class ProfileStore:
    """
    Point lookups, field updates and conditional token updates on profiles.

    Every statement is bounded by ``timeout`` seconds. Single-use token
    guarantees rely on ``compare_and_swap_token``: an ``UPDATE ... WHERE
    token = :expected`` whose rowcount tells the caller whether it won.
    """

    def __init__(self, db: AsyncSession, timeout: float):
        """Initialize store with a database session."""
        self.db = db
        self.timeout = timeout

    async def _execute(self, operation: str, statement: Any, commit: bool = False) -> Any:
        try:
            result = await asyncio.wait_for(self.db.execute(statement), timeout=self.timeout)
            if commit:
                await asyncio.wait_for(self.db.commit(), timeout=self.timeout)
            return result
        except IntegrityError:
            await self.db.rollback()
            raise
        except TimeoutError as e:
            await self.db.rollback()
            logger.error("profile_store_timeout", operation=operation, timeout=self.timeout)
            raise ProfileStoreError(f"Profile store timed out during {operation}") from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("profile_store_error", operation=operation, error=str(e))
            raise ProfileStoreError(f"Profile store failed during {operation}") from e

    async def get(self, profile_id: str) -> dict[str, Any] | None:
        """Get a profile record by id."""
        result = await self._execute("get", select(profiles).where(profiles.c.id == profile_id))
        row = result.mappings().first()
        return dict(row) if row else None

    async def create(self, profile_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """Insert a new profile record."""
        now = datetime.now(UTC)
        values = {**data, "id": profile_id, "created_at": now, "updated_at": now}
        await self._execute("create", insert(profiles).values(**values), commit=True)
        logger.info("profile_created", profile_id=profile_id, role=data.get("role"))
        return await self.get(profile_id)  # type: ignore[return-value]

    async def update_fields(self, profile_id: str, fields: dict[str, Any]) -> bool:
        """
        Update profile fields.

        Returns:
            True if the profile exists
        """
        values = {**fields, "updated_at": datetime.now(UTC)}
        statement = update(profiles).where(profiles.c.id == profile_id).values(**values)
        result = await self._execute("update_fields", statement, commit=True)
        return result.rowcount > 0

    async def soft_delete(self, profile_id: str) -> bool:
        """Mark a profile deleted and drop any live security tokens."""
        now = datetime.now(UTC)
        return await self.update_fields(
            profile_id,
            {
                "status": "deleted",
                "deleted_at": now,
                **{column: None for column in SECURITY_COLUMNS},
            },
        )

    async def set_token(
        self, profile_id: str, purpose: TokenPurpose, digest: str, expires_at: int
    ) -> bool:
        """
        Store a token digest and expiry, replacing any live token for the purpose.

        Raises:
            TokenCollision: The digest is already stored on another profile
        """
        try:
            return await self.update_fields(
                profile_id,
                {purpose.token_column: digest, purpose.expiry_column: expires_at},
            )
        except IntegrityError as e:
            raise TokenCollision(purpose.value) from e

    async def find_by_token(
        self, purpose: TokenPurpose, digest: str, now: int
    ) -> list[dict[str, Any]]:
        """Profiles whose live token for ``purpose`` matches and expires after ``now``."""
        token_column = profiles.c[purpose.token_column]
        expiry_column = profiles.c[purpose.expiry_column]
        statement = (
            select(profiles).where(token_column == digest).where(expiry_column > now).limit(2)
        )
        result = await self._execute("find_by_token", statement)
        return [dict(row) for row in result.mappings().all()]

    async def compare_and_swap_token(
        self,
        profile_id: str,
        purpose: TokenPurpose,
        expected: str,
        replacement: str | None,
        *,
        clear_expiry: bool = False,
        unexpired_at: int | None = None,
        extra: dict[str, Any] | None = None,
    ) -> bool:
        """
        Atomically replace the stored token value if it still equals ``expected``.

        Args:
            profile_id: Profile to update
            purpose: Which token field pair to act on
            expected: Value the token field must currently hold
            replacement: New token field value
            clear_expiry: Also null the expiry field
            unexpired_at: When given, the expiry must be later than this instant
            extra: Additional profile fields written in the same update

        Returns:
            True if this caller performed the swap
        """
        token_column = profiles.c[purpose.token_column]
        expiry_column = profiles.c[purpose.expiry_column]

        values: dict[str, Any] = {
            purpose.token_column: replacement,
            "updated_at": datetime.now(UTC),
            **(extra or {}),
        }
        if clear_expiry:
            values[purpose.expiry_column] = None

        conditions = [profiles.c.id == profile_id, token_column == expected]
        if unexpired_at is not None:
            conditions.append(expiry_column > unexpired_at)

        statement = update(profiles).where(and_(*conditions)).values(**values)
        result = await self._execute("compare_and_swap_token", statement, commit=True)
        return result.rowcount == 1

    async def compare_and_clear_token(
        self,
        profile_id: str,
        purpose: TokenPurpose,
        expected: str,
        extra: dict[str, Any] | None = None,
    ) -> bool:
        """Atomically null a token and its expiry if the token still equals ``expected``."""
        return await self.compare_and_swap_token(
            profile_id, purpose, expected, None, clear_expiry=True, extra=extra
        )

    async def search(
        self,
        role: str | None = None,
        status: str | None = None,
        search: str | None = None,
        limit: int = 10,
        start_after: str | None = None,
    ) -> list[dict[str, Any]]:
        """
        Search profiles, newest first.

        Args:
            role: Filter by role
            status: Filter by status
            search: Email prefix or display-name fragment
            limit: Page size
            start_after: Id of the last profile of the previous page

        Returns:
            Matching profile records

        Raises:
            BadRequestException: ``start_after`` names no profile
        """
        query = select(profiles)

        if role:
            query = query.where(profiles.c.role == role)

        if status:
            query = query.where(profiles.c.status == status)

        if search:
            term = search.strip().lower()
            query = query.where(
                or_(
                    profiles.c.email.startswith(term, autoescape=True),
                    profiles.c.display_name.icontains(term, autoescape=True),
                )
            )

        if start_after:
            cursor = await self.get(start_after)
            if cursor is None:
                raise BadRequestException("Unknown pagination cursor", code="INVALID_CURSOR")
            query = query.where(
                or_(
                    profiles.c.created_at < cursor["created_at"],
                    and_(
                        profiles.c.created_at == cursor["created_at"],
                        profiles.c.id < cursor["id"],
                    ),
                )
            )

        query = query.order_by(profiles.c.created_at.desc(), profiles.c.id.desc()).limit(limit)

        result = await self._execute("search", query)
        records = [dict(row) for row in result.mappings().all()]
        logger.debug(
            "profile_search",
            role=role,
            status=status,
            search=search,
            limit=limit,
            start_after=start_after,
            found=len(records),
        )
        return records
