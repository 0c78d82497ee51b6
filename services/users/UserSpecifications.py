from typing import Any, Dict, Iterable, List, Optional, Tuple

from loguru import logger
from sqlalchemy import Select, func

from DomainModels import Gender, Phone, User


class Specification:
    """
    A conjunction of query criteria over users.
    Combining with None leaves a specification unchanged, so optional filters
    can be chained without checking which of them were supplied.
    """

    def __init__(self, criteria: Tuple[Any, ...] = (), joins_phone: bool = False):
        self.criteria = tuple(criteria)
        self.joins_phone = joins_phone

    def and_(self, other: Optional["Specification"]) -> "Specification":
        if other is None:
            return self
        return Specification(self.criteria + other.criteria, self.joins_phone or other.joins_phone)

    def apply(self, stmt: Select) -> Select:
        if self.joins_phone:
            # a user without a phone must stay a single row and must not disappear
            stmt = stmt.outerjoin(User.phone).distinct()
        if self.criteria:
            stmt = stmt.where(*self.criteria)
        return stmt

    def __bool__(self) -> bool:
        return bool(self.criteria)


def where(spec: Optional[Specification]) -> Specification:
    return spec if spec is not None else Specification()


def _contains(column, q: str):
    escaped = q.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return func.lower(column).like(f"%{escaped}%", escape="\\")


def first_name_contains(q: Optional[str]) -> Optional[Specification]:
    return None if q is None else Specification((_contains(User.first_name, q),))


def last_name_contains(q: Optional[str]) -> Optional[Specification]:
    return None if q is None else Specification((_contains(User.last_name, q),))


def email_contains(q: Optional[str]) -> Optional[Specification]:
    return None if q is None else Specification((_contains(User.email, q),))


def gender_equals(gender: Optional[Gender]) -> Optional[Specification]:
    return None if gender is None else Specification((User.gender == gender,))


def phone_brand_contains(q: Optional[str]) -> Optional[Specification]:
    return None if q is None else Specification((_contains(Phone.brand, q),), joins_phone=True)


def phone_number_contains(q: Optional[str]) -> Optional[Specification]:
    return None if q is None else Specification((_contains(Phone.number, q),), joins_phone=True)


def user_filter(
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    email: Optional[str] = None,
    gender: Optional[Gender] = None,
    phone_brand: Optional[str] = None,
    phone_number: Optional[str] = None,
) -> Specification:
    return (
        where(first_name_contains(first_name))
        .and_(last_name_contains(last_name))
        .and_(email_contains(email))
        .and_(gender_equals(gender))
        .and_(phone_brand_contains(phone_brand))
        .and_(phone_number_contains(phone_number))
    )


# ==================== SORTING ====================

SORTABLE_FIELDS: Dict[str, Any] = {
    "id": User.id,
    "firstName": User.first_name,
    "lastName": User.last_name,
    "email": User.email,
    "gender": User.gender,
}


def parse_sort(sort: Optional[Iterable[str]]) -> List[Tuple[str, str]]:
    """
    Turn "field,direction" parameters into (field, "asc"|"desc") pairs.
    Unknown fields and malformed parameters are skipped with a warning;
    if nothing usable is left the order is id ascending.
    """
    orders: List[Tuple[str, str]] = []
    for param in sort or []:
        parts = param.split(",")
        if len(parts) != 2:
            logger.warning("Invalid sort parameter format: {}", param)
            continue
        field = parts[0].strip()
        direction = parts[1].strip().lower()
        if field not in SORTABLE_FIELDS:
            logger.warning("Invalid sort field requested: {}", field)
            continue
        orders.append((field, "desc" if direction == "desc" else "asc"))
    return orders or [("id", "asc")]


def order_by(sort: Optional[Iterable[str]]) -> List[Any]:
    clauses = []
    for field, direction in parse_sort(sort):
        column = SORTABLE_FIELDS[field]
        clauses.append(column.desc() if direction == "desc" else column.asc())
    return clauses
