"""
Conditional-write persistence port.

Every engine mutation goes through `update` or `transact`, each guarded by an
`expected` mapping of attribute -> value that must hold at write time
(compare-and-swap). A failed guard raises ConditionFailed and nothing is
written. `DynamoStore` (gigflow.dynamo) maps this onto ConditionExpression and
TransactWriteItems; `InMemoryStore` applies the same rules under a lock and is
used for local runs and tests.

Expected values:
    plain value  -> attribute equals value
    None         -> attribute missing or null
    OneOf(...)   -> attribute equals one of the values
"""
import copy
import threading
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Union

from .config import config

# Logical table names
ENGAGEMENTS = 'engagements'
PAYMENTS = 'payments'
SUBMISSIONS = 'submissions'
CHANNELS = 'channels'
SUBSCRIPTIONS = 'subscriptions'

KEY_NAMES = {
    ENGAGEMENTS: 'engagementId',
    PAYMENTS: 'paymentId',
    SUBMISSIONS: 'submissionId',
    CHANNELS: 'engagementId',
    SUBSCRIPTIONS: 'companyId',
}


def physical_table_names() -> Dict[str, str]:
    return {
        ENGAGEMENTS: config.ENGAGEMENTS_TABLE,
        PAYMENTS: config.PAYMENTS_TABLE,
        SUBMISSIONS: config.SUBMISSIONS_TABLE,
        CHANNELS: config.CHANNELS_TABLE,
        SUBSCRIPTIONS: config.SUBSCRIPTIONS_TABLE,
    }


def index_names() -> Dict[tuple, str]:
    """Secondary index used for each (table, attribute) query."""
    return {
        (ENGAGEMENTS, 'gigId'): config.GIG_INDEX,
        (PAYMENTS, 'gatewayOrderRef'): config.ORDER_REF_INDEX,
        (PAYMENTS, 'status'): config.PAYMENT_STATUS_INDEX,
        (SUBMISSIONS, 'engagementId'): config.ENGAGEMENT_INDEX,
    }


class ConditionFailed(Exception):
    """A conditional write found the record in an unexpected state."""


class OneOf:
    """Expected value matching any of the given values."""

    def __init__(self, values: Iterable[Any]):
        self.values = list(values)

    def matches(self, actual: Any) -> bool:
        return actual in self.values

    def __repr__(self):
        return f"OneOf({self.values!r})"


class AtMost:
    """Scan filter: attribute present and <= value."""

    def __init__(self, value: Any):
        self.value = value

    def matches(self, actual: Any) -> bool:
        return actual is not None and actual <= self.value


class Present:
    """Scan filter: attribute present and not null."""

    def matches(self, actual: Any) -> bool:
        return actual is not None


class Put(NamedTuple):
    """Create a record that must not exist yet."""
    table: str
    item: Dict[str, Any]


class Update(NamedTuple):
    """Conditionally update an existing record."""
    table: str
    key: str
    set: Dict[str, Any]
    expected: Optional[Dict[str, Any]] = None
    append: Optional[Dict[str, List[Any]]] = None


Operation = Union[Put, Update]


def matches_expected(item: Optional[Dict[str, Any]], expected: Optional[Dict[str, Any]]) -> bool:
    if item is None:
        return False
    for attr, want in (expected or {}).items():
        actual = item.get(attr)
        if isinstance(want, OneOf):
            if not want.matches(actual):
                return False
        elif want is None:
            if actual is not None:
                return False
        elif actual != want:
            return False
    return True


class Store:
    """Interface shared by the in-memory and DynamoDB stores."""

    def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def put_new(self, table: str, item: Dict[str, Any]) -> None:
        raise NotImplementedError

    def update(
        self,
        table: str,
        key: str,
        set: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
        append: Optional[Dict[str, List[Any]]] = None,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def transact(self, operations: List[Operation]) -> None:
        raise NotImplementedError

    def query(self, table: str, attr: str, value: Any) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def scan(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        raise NotImplementedError


class InMemoryStore(Store):
    """Process-local store with the same conditional semantics as DynamoDB."""

    def __init__(self):
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in KEY_NAMES}
        self._lock = threading.RLock()

    def get(self, table, key):
        with self._lock:
            item = self._tables[table].get(key)
            return copy.deepcopy(item) if item is not None else None

    def put_new(self, table, item):
        self.transact([Put(table, item)])

    def update(self, table, key, set, expected=None, append=None):
        with self._lock:
            self.transact([Update(table, key, set, expected, append)])
            return self.get(table, key)

    def transact(self, operations):
        with self._lock:
            # Check every guard before applying anything
            for op in operations:
                rows = self._tables[op.table]
                if isinstance(op, Put):
                    key = op.item[KEY_NAMES[op.table]]
                    if key in rows:
                        raise ConditionFailed(f"{op.table}/{key} already exists")
                elif not matches_expected(rows.get(op.key), op.expected):
                    raise ConditionFailed(f"{op.table}/{op.key} did not match {op.expected!r}")

            for op in operations:
                rows = self._tables[op.table]
                if isinstance(op, Put):
                    rows[op.item[KEY_NAMES[op.table]]] = copy.deepcopy(op.item)
                    continue
                row = rows[op.key]
                row.update(copy.deepcopy(op.set))
                for attr, entries in (op.append or {}).items():
                    row[attr] = list(row.get(attr) or []) + copy.deepcopy(list(entries))

    def query(self, table, attr, value):
        with self._lock:
            return [copy.deepcopy(item) for item in self._tables[table].values() if item.get(attr) == value]

    def scan(self, table, filters):
        with self._lock:
            found = []
            for item in self._tables[table].values():
                if all(self._filter_matches(item.get(attr), want) for attr, want in filters.items()):
                    found.append(copy.deepcopy(item))
            return found

    @staticmethod
    def _filter_matches(actual, want):
        if isinstance(want, (OneOf, AtMost, Present)):
            return want.matches(actual)
        return actual == want
