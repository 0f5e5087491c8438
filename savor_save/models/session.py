"""Session context passed into every ledger and order operation."""

from pydantic import BaseModel


class SessionContext(BaseModel):
    """Who is acting, and whether a guest may write to the shared partition."""

    user_id: str | None = None
    allow_anonymous: bool = True

    @property
    def is_anonymous(self) -> bool:
        """Check if there is no signed-in user."""
        return self.user_id is None

    @property
    def can_persist(self) -> bool:
        """Check if mutations from this session may reach the store."""
        return not self.is_anonymous or self.allow_anonymous

    def owns(self, row: dict) -> bool:
        """Check if a stored row belongs to this session's partition."""
        return row.get("user_id") == self.user_id
