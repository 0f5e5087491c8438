"""Persistent store contract and row parsing at the adapter edge."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from savor_save.state.realtime import ChangeHandler, Subscription
from savor_save.utils.logging import get_logger

logger = get_logger(__name__)

ORDERS = "orders"
ORDER_STATUS_HISTORY = "order_status_history"
EXPENSES = "expenses"
BUDGETS = "budgets"

ModelT = TypeVar("ModelT", bound=BaseModel)

Row = dict[str, Any]


class Store(ABC):
    """Row-oriented remote store.

    Implementations raise RemoteUnavailableError when a call cannot reach the
    backend. Rows are JSON-compatible dicts keyed by a store-assigned ``id``
    and carry a nullable ``user_id`` owner column.
    """

    @abstractmethod
    async def insert(self, table: str, row: Row) -> Row:
        """Insert a row and return it with its assigned id."""
        pass

    @abstractmethod
    async def insert_order(self, row: Row, now: datetime) -> Row:
        """Assign the next YYYYMMDDNNNN order number and insert, atomically."""
        pass

    @abstractmethod
    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        """Select rows matching every equality filter (None matches null)."""
        pass

    @abstractmethod
    async def update(
        self,
        table: str,
        row_id: str,
        fields: Row,
        only_if: dict[str, Iterable[Any]] | None = None,
    ) -> Row | None:
        """Partially update a row.

        Only the keys in ``fields`` are written. When ``only_if`` is given the
        update applies only if each named column currently holds one of the
        allowed values. Returns None when no row was updated.
        """
        pass

    @abstractmethod
    async def delete(self, table: str, row_id: str) -> bool:
        """Delete a row; False when it did not exist."""
        pass

    @abstractmethod
    async def upsert(self, table: str, row: Row, key: str) -> Row:
        """Insert or update the single row whose ``key`` column matches."""
        pass

    @abstractmethod
    async def transition_order(
        self,
        order_id: str,
        status: str,
        timestamp_field: str,
        at: datetime,
        message: str | None = None,
        location: Row | None = None,
    ) -> bool:
        """Set an order's status and append a history entry as one unit.

        The timestamp field is written only if it is still null. The history
        entry is appended even when no order matched. Returns whether an
        order row was found.
        """
        pass

    @abstractmethod
    def subscribe(self, table: str, handler: ChangeHandler) -> Subscription:
        """Receive INSERT/UPDATE/DELETE events for a table."""
        pass

    async def get(self, table: str, row_id: str) -> Row | None:
        """Fetch one row by id."""
        rows = await self.select(table, {"id": row_id}, limit=1)
        return rows[0] if rows else None

    async def close(self) -> None:
        """Release backend resources."""
        pass


def matches(row: Row, filters: dict[str, Any] | None) -> bool:
    """Check a row against equality filters."""
    if not filters:
        return True
    return all(row.get(field) == value for field, value in filters.items())


def sort_key(value: Any) -> tuple[int, Any]:
    """Sort key that orders ISO timestamps chronologically and nulls first."""
    if value is None:
        return (0, 0)
    if isinstance(value, str):
        try:
            return (1, datetime.fromisoformat(value).timestamp())
        except ValueError:
            return (2, value)
    if isinstance(value, datetime):
        return (1, value.timestamp())
    return (1, value)


def select_rows(
    rows: Iterable[Row],
    filters: dict[str, Any] | None,
    order_by: str | None,
    descending: bool,
    limit: int | None,
) -> list[Row]:
    """Filter, order and truncate rows in memory."""
    result = [row for row in rows if matches(row, filters)]
    if order_by:
        result.sort(key=lambda row: sort_key(row.get(order_by)), reverse=descending)
    if limit is not None:
        result = result[:limit]
    return result


def to_row(model: BaseModel, exclude: set[str] | None = None) -> Row:
    """Serialize a model into a JSON-compatible row."""
    return model.model_dump(mode="json", exclude=exclude)


def parse_row(model: type[ModelT], row: Row) -> ModelT | None:
    """Parse a row into a model, or None if it fails validation."""
    try:
        return model.model_validate(row)
    except SchemaError as e:
        logger.warning(
            "row_rejected",
            model=model.__name__,
            row_id=row.get("id"),
            error_count=e.error_count(),
        )
        return None


def parse_rows(model: type[ModelT], rows: Iterable[Row]) -> list[ModelT]:
    """Parse rows, skipping any that fail validation."""
    parsed = []
    for row in rows:
        item = parse_row(model, row)
        if item is not None:
            parsed.append(item)
    return parsed
