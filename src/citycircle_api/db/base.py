from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base shared by every CityCircle table."""


# Import models so metadata is complete for create_all and Alembic
try:  # pragma: no cover - import side effects only
    import citycircle_api.models  # noqa: F401
except ImportError:  # pragma: no cover - partial imports during migrations
    pass
