"""List envelope returned by the billing read endpoints."""

from typing import Any


def list_response(items: list, limit: int, offset: int) -> dict[str, Any]:
    return {"items": items, "count": len(items), "limit": limit, "offset": offset}


class ListResponseMixin:
    """Adds ``list_response`` to services whose ``list`` ends with ``limit, offset``.

    Filters pass through positionally in the order ``list`` declares them; the
    last two positional arguments are taken as the page window unless
    ``limit``/``offset`` are given by keyword.
    """

    @classmethod
    def list_response(
        cls,
        db,
        *args,
        limit: int | None = None,
        offset: int | None = None,
        **filters,
    ):
        if limit is None or offset is None:
            if len(args) < 2:
                raise ValueError("limit and offset are required for list responses")
            *args, limit, offset = args
        items = cls.list(db, *args, limit=limit, offset=offset, **filters)
        return list_response(items, limit, offset)
