class ListResponseMixin:
    """Wraps a service's ``list`` in the ``ListResponse`` envelope.

    ``limit`` and ``offset`` are always the last two positional arguments of
    ``list`` across services.
    """

    @classmethod
    def list_response(cls, db, *args, **kwargs):
        items = cls.list(db, *args, **kwargs)
        limit = kwargs.get("limit", args[-2] if len(args) >= 2 else None)
        offset = kwargs.get("offset", args[-1] if len(args) >= 1 else None)
        return {"items": items, "count": len(items), "limit": limit, "offset": offset}
