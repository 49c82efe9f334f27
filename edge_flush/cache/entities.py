"""
Entity helpers

Naming and introspection of SQLAlchemy entities for tagging:
    "{EntityClass}-{primary key}@{field}"   e.g. "Post-12@title"
    "{EntityClass}-{primary key}@*"         any field of Post 12
"""

from typing import Any, Iterable, List, Optional

from sqlalchemy import inspect

from edge_flush.cache.config import ANY_TAG


def is_blank(value: Any) -> bool:
    """None, whitespace-only strings and empty collections are blank. 0 and False are not."""
    if value is None:
        return True

    if isinstance(value, str):
        return not value.strip()

    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0

    return False


def entity_name(entity: Any) -> str:
    return type(entity).__name__


def entity_table(entity: Any) -> str:
    return getattr(entity, "__tablename__", None) or entity_name(entity)


def entity_identity(entity: Any) -> Optional[str]:
    """Primary key as a string; composite keys joined with '-'. None until assigned."""
    state = inspect(entity, raiseerr=False)

    if state is None:
        value = getattr(entity, "id", None)
        return None if value is None else str(value)

    identity = state.identity or state.mapper.primary_key_from_instance(entity)

    if not identity or any(part is None for part in identity):
        return None

    return "-".join(str(part) for part in identity)


def column_names(entity: Any) -> List[str]:
    """Column attribute names (relationships excluded)."""
    state = inspect(entity, raiseerr=False)

    if state is None:
        return [key for key in vars(entity) if not key.startswith("_")]

    return [attr.key for attr in state.mapper.column_attrs]


def changed_attributes(entity: Any) -> List[str]:
    """Column attributes with pending changes (value differs from the loaded one)."""
    state = inspect(entity, raiseerr=False)

    if state is None:
        return []

    columns = {attr.key for attr in state.mapper.column_attrs}

    return [
        attr.key
        for attr in state.attrs
        if attr.key in columns and attr.history.has_changes()
    ]


def make_model_name(
    entity: Any,
    key: str,
    allowed_keys: Optional[Iterable[str]] = None,
) -> Optional[str]:
    """
    Tag name for one field of one entity.

    Returns None when the entity has no primary key yet, or when the
    field is not part of a non-empty allowed_keys list.
    """
    allowed_keys = list(allowed_keys or [])

    if allowed_keys and key != ANY_TAG and key not in allowed_keys:
        return None

    identity = entity_identity(entity)

    if identity is None:
        return None

    return f"{entity_name(entity)}-{identity}@{key}"
