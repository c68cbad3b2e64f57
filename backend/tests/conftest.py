import os
import re
import sys
import threading
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from psycopg import errors as pg_errors


# Allow running pytest from either the repo root or from within `backend/`.
# Tests import `backend.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)


def _norm(sql: str) -> str:
    return " ".join(sql.split())


def _new_id() -> str:
    return str(uuid.uuid4())


def _split_top_level(clause: str) -> list:
    parts, depth, buf = [], 0, ""
    for ch in clause:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append(buf.strip())
            buf = ""
        else:
            buf += ch
    if buf.strip():
        parts.append(buf.strip())
    return parts


_FILTER_RE = re.compile(r"AND \w+\.(\w+) ?(>=|<=|=) ?%s")


def _filtered(q: str, p: list, rows) -> tuple:
    """Apply the `AND alias.col <op> %s` filters of a list query; the last param is LIMIT."""
    filters = _FILTER_RE.findall(q)
    checks = list(zip(filters, p))
    out = []
    for r in rows:
        ok = True
        for (col, op), want in checks:
            have = r.get(col)
            if op == "=":
                ok = str(have) == str(want)
            elif op == ">=":
                ok = have >= want
            else:
                ok = have <= want
            if not ok:
                break
        if ok:
            out.append(r)
    return out, p[len(filters)]


class FakeLedger:
    """
    In-memory stand-in for the Ledger Store.

    Understands exactly the statements the ledger modules issue. `FOR UPDATE`
    takes a real per-row lock held until the owning transaction ends, and a
    failed transaction is rolled back from an undo log, so concurrency and
    atomicity tests exercise the same code paths they would against Postgres.
    """

    def __init__(self):
        self.mutex = threading.RLock()
        self.farmers = {}
        self.buyers = {}
        self.lots = {}
        self.reports = {}
        self.lines = {}
        self.deliveries = {}
        self.audit = {}
        self._row_locks = {}
        # line_no whose INSERT should fail, to exercise rollback.
        self.fail_on_line = None
        # Runs once just before the next sales_reports INSERT (a competing writer).
        self.before_report_insert = None

    def row_lock(self, key) -> threading.Lock:
        with self.mutex:
            return self._row_locks.setdefault(key, threading.Lock())

    def connect(self) -> "FakeConn":
        return FakeConn(self)

    # Seeding helpers

    def add_farmer(self, full_name="Juan dela Cruz") -> str:
        fid = _new_id()
        self.farmers[fid] = {"id": fid, "full_name": full_name, "contact_number": "09171234567"}
        return fid

    def add_buyer(self, business_name="Catanduanes Fiber Trading") -> str:
        bid = _new_id()
        self.buyers[bid] = {
            "id": bid,
            "business_name": business_name,
            "contact_number": "09998887777",
            "business_address": "Virac",
        }
        return bid

    def add_lot(self, farmer_id, quantity_kg="100.00", variety="Musa textilis", grade="S2") -> str:
        lid = _new_id()
        self.lots[lid] = {
            "id": lid,
            "farmer_id": farmer_id,
            "variety": variety,
            "grade": grade,
            "quantity_kg": Decimal(quantity_kg),
            "harvest_date": date(2024, 3, 1),
            "location": "Barangay San Isidro",
            "status": "available",
            "claimed_by_delivery_id": None,
        }
        return lid

    def add_report(self, farmer_id, status="pending", report_month="2024-03", idempotency_key=None, submitted_at=None) -> str:
        rid = _new_id()
        self.reports[rid] = {
            "id": rid,
            "farmer_id": farmer_id,
            "report_month": report_month,
            "total_revenue": Decimal("1500.00"),
            "total_quantity": Decimal("30.00"),
            "transaction_count": 2,
            "notes": None,
            "status": status,
            "submitted_at": submitted_at or datetime.now(timezone.utc),
            "reviewed_by": None,
            "reviewed_at": None,
            "rejection_reason": None,
            "idempotency_key": idempotency_key,
        }
        return rid

    def lines_for(self, report_id) -> list:
        return sorted((r for r in self.lines.values() if r["report_id"] == report_id), key=lambda r: r["line_no"])

    def audit_actions(self) -> list:
        return [a["action"] for a in self.audit.values()]


class FakeConn:
    def __init__(self, ledger: FakeLedger):
        self.ledger = ledger
        self._undo = None
        self._held = set()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return FakeCursor(self)

    @contextmanager
    def transaction(self):
        # Nested blocks behave as savepoints: roll back their own writes only.
        outer = self._undo is None
        if outer:
            self._undo = []
        mark = len(self._undo)
        try:
            yield self
        except BaseException:
            with self.ledger.mutex:
                for table, key, old in reversed(self._undo[mark:]):
                    if old is None:
                        table.pop(key, None)
                    else:
                        table[key] = old
                del self._undo[mark:]
            raise
        finally:
            if outer:
                self._undo = None
                for key in list(self._held):
                    self.ledger.row_lock(key).release()
                self._held.clear()

    def acquire(self, table_name: str, row_id) -> None:
        key = (table_name, str(row_id))
        if key in self._held:
            return
        if not self.ledger.row_lock(key).acquire(timeout=10):
            raise RuntimeError(f"lock wait timeout on {key}")
        self._held.add(key)

    def put(self, table: dict, key, row) -> None:
        if self._undo is not None:
            old = table.get(key)
            self._undo.append((table, key, dict(old) if old is not None else None))
        if row is None:
            table.pop(key, None)
        else:
            table[key] = row


class FakeCursor:
    def __init__(self, conn: FakeConn):
        self.conn = conn
        self.ledger = conn.ledger
        self.executed = []
        self.rowcount = -1
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)

    def execute(self, sql, params=None):
        q = _norm(sql)
        p = list(params or ())
        self.executed.append((q, tuple(p)))
        self.rowcount = 0
        self._rows = []

        # Row locks are taken before the store mutex so waiters never block readers.
        if q.endswith("FOR UPDATE"):
            if "FROM inventory_lots" in q:
                self.conn.acquire("inventory_lots", p[0])
            elif "FROM fiber_deliveries" in q:
                self.conn.acquire("fiber_deliveries", p[0])
            elif "FROM sales_reports" in q:
                self.conn.acquire("sales_reports", p[0])

        with self.ledger.mutex:
            self._dispatch(q, p)

    def _result(self, rows):
        self._rows = [dict(r) for r in rows]
        self.rowcount = len(self._rows)

    def _dispatch(self, q, p):
        L = self.ledger
        now = datetime.now(timezone.utc)

        if q.startswith("SELECT 1 FROM farmers WHERE id=%s"):
            self._result([{"?column?": 1}] if p[0] in L.farmers else [])

        elif "FROM sales_reports WHERE farmer_id=%s AND idempotency_key=%s" in q:
            self._result(
                r for r in L.reports.values() if r["farmer_id"] == p[0] and r["idempotency_key"] == p[1]
            )

        elif q.startswith("INSERT INTO sales_reports"):
            if L.before_report_insert is not None:
                hook, L.before_report_insert = L.before_report_insert, None
                hook()
            # ux_sales_reports_idempotency
            if p[6] is not None:
                for r in L.reports.values():
                    if r["farmer_id"] == p[0] and r["idempotency_key"] == p[6]:
                        raise pg_errors.UniqueViolation("duplicate key value violates ux_sales_reports_idempotency")
            rid = _new_id()
            self.conn.put(
                L.reports,
                rid,
                {
                    "id": rid,
                    "farmer_id": p[0],
                    "report_month": p[1],
                    "total_revenue": p[2],
                    "total_quantity": p[3],
                    "transaction_count": p[4],
                    "notes": p[5],
                    "status": "pending",
                    "submitted_at": now,
                    "reviewed_by": None,
                    "reviewed_at": None,
                    "rejection_reason": None,
                    "idempotency_key": p[6],
                },
            )
            self._result([{"id": rid}])

        elif q.startswith("INSERT INTO sales_transactions"):
            if L.fail_on_line == p[1]:
                raise pg_errors.CheckViolation(f"simulated failure on line {p[1]}")
            lid = _new_id()
            keys = ["report_id", "line_no", "buyer_name", "fiber_grade", "quantity_kg",
                    "price_per_kg", "total_amount", "sale_date", "payment_method"]
            row = dict(zip(keys, p))
            row["id"] = lid
            self.conn.put(L.lines, lid, row)
            self.rowcount = 1

        elif q.startswith("INSERT INTO audit_logs"):
            aid = _new_id()
            keys = ["actor_id", "actor_role", "action", "entity_type", "entity_id", "details"]
            row = dict(zip(keys, p))
            row["id"] = aid
            self.conn.put(L.audit, aid, row)
            self.rowcount = 1

        elif q.startswith("SELECT id, status FROM sales_reports WHERE id=%s FOR UPDATE"):
            row = L.reports.get(p[0])
            self._result([{"id": row["id"], "status": row["status"]}] if row else [])

        elif q.startswith("UPDATE sales_reports SET status=%s"):
            status, reviewer_id, reason, rid = p
            row = dict(L.reports[rid])
            row.update(status=status, reviewed_by=reviewer_id, reviewed_at=now, rejection_reason=reason)
            self.conn.put(L.reports, rid, row)
            self._result([row])

        elif "FROM sales_reports sr JOIN farmers f" in q and "WHERE sr.id=%s" in q:
            row = L.reports.get(p[0])
            if row:
                row = dict(row, farmer_name=L.farmers[row["farmer_id"]]["full_name"])
            self._result([row] if row else [])

        elif "FROM sales_reports sr JOIN farmers f" in q and "WHERE 1=1" in q:
            rows, limit = _filtered(q, p, L.reports.values())
            rows.sort(key=lambda r: r["submitted_at"], reverse=True)
            self._result(dict(r, farmer_name=L.farmers[r["farmer_id"]]["full_name"]) for r in rows[:limit])

        elif q.startswith("SELECT id, line_no") and "FROM sales_transactions WHERE report_id=%s" in q:
            self._result(L.lines_for(p[0]))

        elif "FROM buyers WHERE id=%s" in q:
            row = L.buyers.get(p[0])
            self._result([row] if row else [])

        elif "FROM inventory_lots WHERE id=%s FOR UPDATE" in q:
            row = L.lots.get(p[0])
            self._result([row] if row else [])

        elif q.startswith("INSERT INTO fiber_deliveries"):
            lot_id = p[2]
            # ux_fiber_deliveries_active_lot
            for d in L.deliveries.values():
                if str(d["lot_id"]) == str(lot_id) and d["status"] != "Cancelled":
                    raise pg_errors.UniqueViolation("duplicate key value violates ux_fiber_deliveries_active_lot")
            keys = ["farmer_id", "buyer_id", "lot_id", "delivery_date", "delivery_time", "variety",
                    "quantity_kg", "grade", "price_per_kg", "total_amount", "pickup_location",
                    "delivery_location", "farmer_contact", "buyer_contact", "delivery_method",
                    "payment_method", "notes"]
            row = dict(zip(keys, p))
            did = _new_id()
            row.update(
                id=did,
                status="In Transit",
                payment_status="Unpaid",
                payment_date=None,
                cancellation_reason=None,
                confirmed_at=now,
                delivered_at=None,
                completed_at=None,
                cancelled_at=None,
                created_at=now,
                updated_at=now,
            )
            self.conn.put(L.deliveries, did, row)
            self._result([row])

        elif q.startswith("UPDATE inventory_lots SET status='claimed'"):
            delivery_id, lot_id = p
            lot = L.lots.get(lot_id)
            if lot and lot["status"] == "available":
                self.conn.put(L.lots, lot_id, dict(lot, status="claimed", claimed_by_delivery_id=delivery_id))
                self.rowcount = 1

        elif q.startswith("UPDATE inventory_lots SET status='available'"):
            lot_id, delivery_id = str(p[0]), str(p[1])
            lot = L.lots.get(lot_id)
            if lot and str(lot["claimed_by_delivery_id"]) == delivery_id:
                self.conn.put(L.lots, lot_id, dict(lot, status="available", claimed_by_delivery_id=None))
                self.rowcount = 1

        elif q.startswith("SELECT * FROM fiber_deliveries WHERE id=%s FOR UPDATE"):
            row = L.deliveries.get(p[0])
            self._result([row] if row else [])

        elif q.startswith("UPDATE fiber_deliveries SET"):
            clause = q[len("UPDATE fiber_deliveries SET "):q.index(" WHERE id=%s")]
            did = p[-1]
            row = dict(L.deliveries[did])
            values = p[:-1]
            for part in _split_top_level(clause):
                col, expr = [x.strip() for x in part.split("=", 1)]
                if expr == "%s":
                    row[col] = values.pop(0)
                elif expr == "now()":
                    row[col] = now
                elif expr.startswith("'"):
                    row[col] = expr.strip("'")
                elif expr.startswith("COALESCE(%s"):
                    v = values.pop(0)
                    if v is not None:
                        row[col] = v
                elif expr.endswith("CURRENT_DATE)"):
                    row[col] = row.get(col) or date.today()
                else:
                    raise AssertionError(f"unsupported SET expression: {part}")
            if row["status"] == "Cancelled" and not (row.get("cancellation_reason") or "").strip():
                raise pg_errors.CheckViolation("cancelled delivery requires a reason")
            self.conn.put(L.deliveries, did, row)
            self._result([row])

        elif q.startswith("DELETE FROM fiber_deliveries WHERE id=%s"):
            if p[0] in L.deliveries:
                self.conn.put(L.deliveries, p[0], None)
                self.rowcount = 1

        elif q.startswith("SELECT sr.farmer_id, f.full_name AS farmer_name, COUNT(*)::int AS report_count"):
            period = p[0] if "sr.report_month = %s" in q else None
            groups = {}
            for r in L.reports.values():
                if r["status"] != "approved" or (period and r["report_month"] != period):
                    continue
                g = groups.setdefault(
                    r["farmer_id"],
                    {
                        "farmer_id": r["farmer_id"],
                        "farmer_name": L.farmers[r["farmer_id"]]["full_name"],
                        "report_count": 0,
                        "total_revenue": Decimal("0"),
                        "total_quantity": Decimal("0"),
                        "total_transactions": 0,
                        "first_submitted_at": r["submitted_at"],
                        "last_report_date": r["submitted_at"],
                    },
                )
                g["report_count"] += 1
                g["total_revenue"] += r["total_revenue"]
                g["total_quantity"] += r["total_quantity"]
                g["total_transactions"] += r["transaction_count"]
                g["first_submitted_at"] = min(g["first_submitted_at"], r["submitted_at"])
                g["last_report_date"] = max(g["last_report_date"], r["submitted_at"])
            rows = sorted(groups.values(), key=lambda g: g["first_submitted_at"])
            rows.sort(key=lambda g: g["total_revenue"], reverse=True)
            self._result(rows)

        elif "FROM fiber_deliveries d JOIN buyers b" in q and "WHERE d.id=%s" in q:
            row = L.deliveries.get(p[0])
            if row:
                buyer = L.buyers[row["buyer_id"]]
                farmer = L.farmers[row["farmer_id"]]
                row = dict(
                    row,
                    buyer_name=buyer["business_name"],
                    farmer_name=farmer["full_name"],
                    buyer_contact_number=buyer["contact_number"],
                    buyer_address=buyer["business_address"],
                    farmer_contact_number=farmer["contact_number"],
                )
            self._result([row] if row else [])

        elif "FROM fiber_deliveries d JOIN buyers b" in q and "WHERE 1=1" in q:
            rows, limit = _filtered(q, p, L.deliveries.values())
            rows.sort(key=lambda d: d["created_at"], reverse=True)
            self._result(
                dict(
                    d,
                    buyer_name=L.buyers[d["buyer_id"]]["business_name"],
                    farmer_name=L.farmers[d["farmer_id"]]["full_name"],
                )
                for d in rows[:limit]
            )

        elif "FROM fiber_deliveries WHERE farmer_id=%s" in q:
            self._result(d for d in L.deliveries.values() if str(d["farmer_id"]) == p[0])

        else:
            raise AssertionError(f"unexpected SQL: {q}")


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def conn(ledger):
    return ledger.connect()


@pytest.fixture
def farmer(ledger):
    fid = ledger.add_farmer()
    return {"actor_id": fid, "role": "farmer"}


@pytest.fixture
def reviewer():
    return {"actor_id": _new_id(), "role": "reviewer"}


@pytest.fixture
def association():
    return {"actor_id": _new_id(), "role": "association"}


