"""
In-memory stand-in for the supabase client's table query builder.

Supports the subset the ListingStore uses: select (with count/head),
insert, update, upsert (on_conflict), delete, eq/neq/in_/gt/gte/lt/lte,
is_('null'), ilike, not_, order, limit, range and execute(). Unique columns
raise postgrest APIError with code 23505 like PostgREST does, and max_rows
caps every select response like the PostgREST max-rows setting.
"""

import copy
import re
import uuid
from typing import Any, Callable, Dict, List, Optional

from postgrest.exceptions import APIError

DEFAULT_UNIQUE = {
    'mls_listings': ['listing_key'],
    'buildings': ['canonical_address'],
}


class FakeResponse:
    def __init__(self, data: List[Dict], count: Optional[int] = None):
        self.data = data
        self.count = count


class FakeQuery:
    def __init__(self, db: 'FakeSupabase', table: str):
        self.db = db
        self.table_name = table
        self.op = 'select'
        self.payload: Any = None
        self.columns = '*'
        self.count_mode = None
        self.head = False
        self.on_conflict: Optional[str] = None
        self.filters: List[Callable[[Dict], bool]] = []
        self.order_by: List = []
        self.limit_n: Optional[int] = None
        self.window: Optional[tuple] = None
        self._negate = False

    # Operations

    def select(self, *columns, count=None, head=None):
        self.op = 'select'
        self.columns = ','.join(columns) if columns else '*'
        self.count_mode = count
        self.head = bool(head)
        return self

    def insert(self, rows, **kwargs):
        self.op = 'insert'
        self.payload = rows
        return self

    def update(self, data, **kwargs):
        self.op = 'update'
        self.payload = data
        return self

    def upsert(self, rows, on_conflict=None, **kwargs):
        self.op = 'upsert'
        self.payload = rows
        self.on_conflict = on_conflict
        return self

    def delete(self, **kwargs):
        self.op = 'delete'
        return self

    # Filters

    @property
    def not_(self):
        self._negate = True
        return self

    def _filter(self, predicate: Callable[[Dict], bool]):
        if self._negate:
            self._negate = False
            self.filters.append(lambda row, p=predicate: not p(row))
        else:
            self.filters.append(predicate)
        return self

    def eq(self, column, value):
        return self._filter(lambda row: row.get(column) == value)

    def neq(self, column, value):
        return self._filter(lambda row: row.get(column) != value)

    def in_(self, column, values):
        values = list(values)
        return self._filter(lambda row: row.get(column) in values)

    def gt(self, column, value):
        return self._filter(lambda row: row.get(column) is not None and row.get(column) > value)

    def gte(self, column, value):
        return self._filter(lambda row: row.get(column) is not None and row.get(column) >= value)

    def lt(self, column, value):
        return self._filter(lambda row: row.get(column) is not None and row.get(column) < value)

    def lte(self, column, value):
        return self._filter(lambda row: row.get(column) is not None and row.get(column) <= value)

    def is_(self, column, value):
        if value == 'null':
            return self._filter(lambda row: row.get(column) is None)
        return self._filter(lambda row: row.get(column) is value)

    def ilike(self, column, pattern):
        regex = re.compile(
            '^' + '.*'.join(re.escape(part) for part in str(pattern).split('%')) + '$',
            re.IGNORECASE,
        )
        return self._filter(lambda row: row.get(column) is not None and bool(regex.match(str(row.get(column)))))

    def order(self, column, desc=False, **kwargs):
        self.order_by.append((column, desc))
        return self

    def limit(self, n, **kwargs):
        self.limit_n = n
        return self

    def range(self, start, end, **kwargs):
        self.window = (start, end)
        return self

    # Execution

    def _matches(self, row: Dict) -> bool:
        return all(predicate(row) for predicate in self.filters)

    def _project(self, row: Dict) -> Dict:
        if self.columns.strip() == '*':
            return copy.deepcopy(row)
        names = [c.strip() for c in self.columns.split(',') if c.strip()]
        return {name: copy.deepcopy(row.get(name)) for name in names}

    def execute(self) -> FakeResponse:
        self.db.calls.append((self.table_name, self.op))
        self.db.check_failure(self.table_name, self.op)

        rows = self.db.tables.setdefault(self.table_name, [])

        if self.op == 'select':
            matched = [row for row in rows if self._matches(row)]
            for column, desc in reversed(self.order_by):
                matched.sort(key=lambda r: (r.get(column) is None, r.get(column) or ''), reverse=desc)
            count = len(matched) if self.count_mode else None
            if self.window is not None:
                matched = matched[self.window[0]:self.window[1] + 1]
            if self.limit_n is not None:
                matched = matched[:self.limit_n]
            if self.db.max_rows is not None:
                matched = matched[:self.db.max_rows]
            data = [] if self.head else [self._project(row) for row in matched]
            return FakeResponse(data, count)

        if self.op == 'insert':
            payload = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = [self.db.insert_row(self.table_name, row) for row in payload]
            return FakeResponse(copy.deepcopy(inserted))

        if self.op == 'upsert':
            payload = self.payload if isinstance(self.payload, list) else [self.payload]
            written = []
            for row in payload:
                existing = None
                if self.on_conflict:
                    existing = next((r for r in rows if r.get(self.on_conflict) == row.get(self.on_conflict)), None)
                if existing is not None:
                    existing.update(copy.deepcopy(row))
                    written.append(existing)
                else:
                    written.append(self.db.insert_row(self.table_name, row))
            return FakeResponse(copy.deepcopy(written))

        if self.op == 'update':
            matched = [row for row in rows if self._matches(row)]
            for row in matched:
                row.update(copy.deepcopy(self.payload))
            return FakeResponse(copy.deepcopy(matched))

        if self.op == 'delete':
            matched = [row for row in rows if self._matches(row)]
            self.db.tables[self.table_name] = [row for row in rows if not self._matches(row)]
            return FakeResponse(copy.deepcopy(matched))

        raise ValueError(f"Unsupported operation {self.op}")


class FakeSupabase:
    """Tables are plain lists of dicts; tests seed and inspect them directly"""

    def __init__(self, unique: Optional[Dict[str, List[str]]] = None, max_rows: Optional[int] = None):
        self.tables: Dict[str, List[Dict]] = {}
        self.unique = unique if unique is not None else dict(DEFAULT_UNIQUE)
        self.max_rows = max_rows
        self.calls: List = []
        self._failures: Dict = {}

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def seed(self, table: str, rows: List[Dict]):
        for row in rows:
            self.insert_row(table, row)

    def rows(self, table: str) -> List[Dict]:
        return self.tables.get(table, [])

    def get(self, table: str, row_id: str) -> Optional[Dict]:
        return next((row for row in self.rows(table) if row.get('id') == row_id), None)

    def fail(self, table: str, op: str, error: Exception, times: int = -1):
        """Make the next `times` executions of table/op raise (forever when -1)"""
        self._failures[(table, op)] = [error, times]

    def check_failure(self, table: str, op: str):
        entry = self._failures.get((table, op))
        if not entry:
            return
        error, times = entry
        if times == 0:
            return
        if times > 0:
            entry[1] = times - 1
        raise error

    def insert_row(self, table: str, row: Dict) -> Dict:
        rows = self.tables.setdefault(table, [])
        for column in self.unique.get(table, []):
            value = row.get(column)
            if value is not None and any(r.get(column) == value for r in rows):
                raise APIError({
                    'message': f'duplicate key value violates unique constraint "{table}_{column}_key"',
                    'code': '23505',
                    'hint': None,
                    'details': f'Key ({column})=({value}) already exists.',
                })
        stored = copy.deepcopy(row)
        stored.setdefault('id', str(uuid.uuid4()))
        rows.append(stored)
        return stored
