import datetime
import enum

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    # Persist ".value" ("auto-generate") rather than the member name.
    return [member.value for member in enum_cls]
