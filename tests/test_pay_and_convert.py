import asyncio
import logging
from decimal import Decimal

import pytest
from sqlalchemy import update

from school_ops.config import settings
from school_ops.db.models import AuditLog, Batch, ConversionAttempt, Invoice, Lead, Payment, Student
from school_ops.routes import invoices as invoices_route
from school_ops.services import conversion, idempotency


def _url(invoice_id: str) -> str:
    return f"/invoices/{invoice_id}/pay-and-convert"


async def _pending_attempt(session_factory, ids, key, status="PENDING"):
    async with session_factory() as session:
        session.add(
            ConversionAttempt(
                idempotency_key=key,
                invoice_id=ids["invoice_id"],
                lead_id=ids["lead_id"],
                paid_amount=Decimal("500.00"),
                currency="EUR",
                status=status,
                error_message="boom" if status == "FAILED" else None,
            )
        )
        await session.commit()


# ============================================================
# Happy paths
# ============================================================

async def test_full_payment_converts_lead(client, founder, seed, fetch, count_rows):
    ids = await seed(total="500.00")

    r = await client.post(
        _url(ids["invoice_id"]),
        json={"paidAmount": 500, "idempotencyKey": "key-full"},
        headers=founder,
    )

    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["invoiceStatus"] == "PAID"
    assert body["studentId"] == body["student"]["studentId"]
    assert body["studentId"].startswith("STU")
    assert body["student"]["totalPaid"] == "500.00"
    assert body["student"]["balance"] == "0.00"
    assert body["student"]["paymentStatus"] == "PAID"
    assert body["student"]["enrollmentType"] == "A1_TO_B1"
    assert body["student"]["referralSource"] == "INSTAGRAM"

    invoice = await fetch(Invoice, ids["invoice_id"])
    lead = await fetch(Lead, ids["lead_id"])
    batch = await fetch(Batch, ids["batch_id"])
    assert invoice.status == "PAID"
    assert invoice.paid_amount == Decimal("500.00")
    assert invoice.remaining_amount == Decimal("0.00")
    assert invoice.student_id == body["student"]["id"]
    assert lead.converted is True
    assert lead.status == "CONVERTED"
    assert lead.student_id == body["student"]["id"]
    assert batch.enrolled_count == 1

    assert await count_rows(Student) == 1
    assert await count_rows(Payment, Payment.amount == Decimal("500.00")) == 1
    assert await count_rows(
        ConversionAttempt,
        ConversionAttempt.idempotency_key == "key-full",
        ConversionAttempt.status == "COMPLETED",
    ) == 1


async def test_partial_payment_leaves_balance(client, founder, seed, fetch):
    ids = await seed(total="500.00")

    r = await client.post(
        _url(ids["invoice_id"]),
        json={"paidAmount": 499.99, "idempotencyKey": "key-partial"},
        headers=founder,
    )

    assert r.status_code == 200
    student = r.json()["student"]
    assert student["paymentStatus"] == "PARTIAL"
    assert student["balance"] == "0.01"
    assert student["finalPrice"] == "500.00"

    invoice = await fetch(Invoice, ids["invoice_id"])
    assert invoice.status == "PAID"
    assert invoice.remaining_amount == Decimal("0.01")


async def test_conversion_writes_three_audit_entries(client, founder, seed, count_rows):
    ids = await seed()

    r = await client.post(
        _url(ids["invoice_id"]),
        json={"paidAmount": 500, "idempotencyKey": "key-audit"},
        headers=founder,
    )

    assert r.status_code == 200
    for action in ("LEAD_TO_STUDENT_CONVERSION", "PAYMENT_RECEIVED", "LEAD_CONVERTED"):
        assert await count_rows(AuditLog, AuditLog.action == action, AuditLog.severity == "INFO") == 1


async def test_explicit_batch_overrides_lead_batch(client, founder, seed, fetch):
    ids = await seed(total="300.00")
    other = await seed(total="200.00")

    r = await client.post(
        _url(ids["invoice_id"]),
        json={"paidAmount": 300, "idempotencyKey": "key-batch", "batchId": other["batch_id"]},
        headers=founder,
    )

    assert r.status_code == 200
    assert r.json()["student"]["batchId"] == other["batch_id"]
    assert (await fetch(Batch, other["batch_id"])).enrolled_count == 1
    assert (await fetch(Batch, ids["batch_id"])).enrolled_count == 0


async def test_full_batch_still_enrolls(client, founder, seed, session_factory, fetch, caplog):
    ids = await seed(total_seats=1)
    async with session_factory() as session:
        await session.execute(
            update(Batch).where(Batch.id == ids["batch_id"]).values(enrolled_count=1)
        )
        await session.commit()

    with caplog.at_level(logging.WARNING, logger="school_ops.routes.invoices"):
        r = await client.post(
            _url(ids["invoice_id"]),
            json={"paidAmount": 500, "idempotencyKey": "key-full-batch"},
            headers=founder,
        )

    assert r.status_code == 200
    assert (await fetch(Batch, ids["batch_id"])).enrolled_count == 2
    assert "is full" in caplog.text


# ============================================================
# Amount validation
# ============================================================

async def test_overpayment_rejected_without_writes(client, founder, seed, fetch, count_rows):
    ids = await seed(total="500.00")

    r = await client.post(
        _url(ids["invoice_id"]),
        json={"paidAmount": 600, "idempotencyKey": "key-over"},
        headers=founder,
    )

    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "Paid amount exceeds invoice total"
    assert body["details"] == {
        "paidAmount": "600.00",
        "invoiceTotal": "500.00",
        "excess": "100.00",
    }
    assert await count_rows(Student) == 0
    assert await count_rows(Payment) == 0
    assert await count_rows(ConversionAttempt) == 0
    assert (await fetch(Invoice, ids["invoice_id"])).status == "PENDING"


async def test_overpayment_then_valid_retry_with_same_key(client, founder, seed):
    ids = await seed()
    url = _url(ids["invoice_id"])

    r1 = await client.post(url, json={"paidAmount": 600, "idempotencyKey": "key-fix"}, headers=founder)
    r2 = await client.post(url, json={"paidAmount": 500, "idempotencyKey": "key-fix"}, headers=founder)

    assert r1.status_code == 400
    assert r2.status_code == 200


async def test_invalid_amounts_fail_validation(client, founder, seed):
    ids = await seed()
    url = _url(ids["invoice_id"])

    for amount in (0, -5, 10.001, 100000.01):
        r = await client.post(url, json={"paidAmount": amount, "idempotencyKey": "k"}, headers=founder)
        assert r.status_code == 400, amount
        assert r.json()["error"] == "Validation failed"


async def test_missing_idempotency_key_fails_validation(client, founder, seed):
    ids = await seed()

    r = await client.post(_url(ids["invoice_id"]), json={"paidAmount": 500}, headers=founder)

    assert r.status_code == 400
    assert r.json()["error"] == "Validation failed"


# ============================================================
# Idempotency
# ============================================================

async def test_replay_returns_cached_body(client, founder, seed, fetch, count_rows):
    ids = await seed()
    payload = {"paidAmount": 500, "idempotencyKey": "key-replay"}

    r1 = await client.post(_url(ids["invoice_id"]), json=payload, headers=founder)
    r2 = await client.post(_url(ids["invoice_id"]), json=payload, headers=founder)

    assert r1.status_code == 200
    assert r2.status_code == 200
    assert r2.json() == r1.json()
    assert await count_rows(Student) == 1
    assert await count_rows(Payment) == 1
    assert (await fetch(Batch, ids["batch_id"])).enrolled_count == 1


async def test_pending_attempt_returns_409(client, founder, seed, session_factory, count_rows):
    ids = await seed()
    await _pending_attempt(session_factory, ids, "key-busy")

    r = await client.post(
        _url(ids["invoice_id"]),
        json={"paidAmount": 500, "idempotencyKey": "key-busy"},
        headers=founder,
    )

    assert r.status_code == 409
    assert r.json()["error"] == "Conversion in progress"
    assert r.headers["Retry-After"] == "5"
    assert await count_rows(Student) == 0


async def test_lost_insert_race_returns_409(client, founder, seed, session_factory, count_rows, monkeypatch):
    ids = await seed()
    await _pending_attempt(session_factory, ids, "key-race")

    async def not_found(session, key):
        return None

    # The lookup misses, the unique index catches the duplicate
    monkeypatch.setattr(idempotency, "get_attempt_by_key", not_found)

    r = await client.post(
        _url(ids["invoice_id"]),
        json={"paidAmount": 500, "idempotencyKey": "key-race"},
        headers=founder,
    )

    assert r.status_code == 409
    assert r.json()["error"] == "Duplicate conversion attempt"
    assert await count_rows(Student) == 0
    assert await count_rows(ConversionAttempt) == 1


@pytest.mark.serialized_writes
async def test_concurrent_requests_with_same_key_convert_once(
    client, founder, seed, fetch, count_rows, monkeypatch
):
    ids = await seed()
    payload = {"paidAmount": 500, "idempotencyKey": "key-concurrent"}

    arrived = 0
    both_ready = asyncio.Event()
    original_claim = idempotency.claim

    # Hold each request at the claim until the other one gets there too
    async def claim_together(session, key, **fields):
        nonlocal arrived
        arrived += 1
        if arrived == 2:
            both_ready.set()
        await asyncio.wait_for(both_ready.wait(), timeout=5)
        return await original_claim(session, key, **fields)

    monkeypatch.setattr(idempotency, "claim", claim_together)

    responses = await asyncio.gather(
        client.post(_url(ids["invoice_id"]), json=payload, headers=founder),
        client.post(_url(ids["invoice_id"]), json=payload, headers=founder),
    )

    assert sorted(r.status_code for r in responses) == [200, 409]
    loser = next(r for r in responses if r.status_code == 409)
    assert loser.json()["error"] == "Duplicate conversion attempt"
    assert await count_rows(Student) == 1
    assert await count_rows(Payment) == 1
    assert await count_rows(ConversionAttempt) == 1
    assert await count_rows(ConversionAttempt, ConversionAttempt.status == "COMPLETED") == 1
    assert (await fetch(Batch, ids["batch_id"])).enrolled_count == 1


async def test_failed_attempt_is_retried(client, founder, seed, session_factory, count_rows):
    ids = await seed()
    await _pending_attempt(session_factory, ids, "key-retry", status="FAILED")

    r = await client.post(
        _url(ids["invoice_id"]),
        json={"paidAmount": 500, "idempotencyKey": "key-retry"},
        headers=founder,
    )

    assert r.status_code == 200
    assert await count_rows(ConversionAttempt) == 1
    assert await count_rows(ConversionAttempt, ConversionAttempt.status == "COMPLETED") == 1


async def test_second_key_for_converted_lead_rejected(client, founder, seed, count_rows):
    ids = await seed()
    url = _url(ids["invoice_id"])

    r1 = await client.post(url, json={"paidAmount": 500, "idempotencyKey": "key-a"}, headers=founder)
    r2 = await client.post(url, json={"paidAmount": 500, "idempotencyKey": "key-b"}, headers=founder)

    assert r1.status_code == 200
    assert r2.status_code == 400
    assert r2.json()["error"] == "Lead already converted"
    assert await count_rows(Student) == 1
    assert await count_rows(ConversionAttempt) == 1


async def test_lead_converted_after_checks_returns_409(
    client, founder, seed, session_factory, count_rows, monkeypatch
):
    ids = await seed()
    async with session_factory() as session:
        await session.execute(update(Lead).where(Lead.id == ids["lead_id"]).values(converted=True))
        await session.commit()

    real_get_lead = invoices_route.get_lead_by_id

    async def stale_lead(session, lead_id, **kwargs):
        # what the route saw before another request converted the lead
        lead = await real_get_lead(session, lead_id, **kwargs)
        session.expunge(lead)
        lead.converted = False
        return lead

    monkeypatch.setattr(invoices_route, "get_lead_by_id", stale_lead)

    r = await client.post(
        _url(ids["invoice_id"]),
        json={"paidAmount": 500, "idempotencyKey": "key-late"},
        headers=founder,
    )

    assert r.status_code == 409
    assert r.json() == {"error": "Lead already converted"}
    assert await count_rows(Student) == 0
    assert await count_rows(ConversionAttempt, ConversionAttempt.status == "FAILED") == 1
    assert await count_rows(
        AuditLog, AuditLog.action == "LEAD_TO_STUDENT_CONVERSION", AuditLog.severity == "WARNING"
    ) == 1


# ============================================================
# Atomicity
# ============================================================

async def test_failure_mid_transaction_rolls_back_everything(
    client, founder, seed, fetch, count_rows, monkeypatch
):
    ids = await seed()

    async def seat_update_fails(session, batch_id):
        raise RuntimeError("seat update failed")

    monkeypatch.setattr(conversion, "increment_batch_enrollment", seat_update_fails)

    r = await client.post(
        _url(ids["invoice_id"]),
        json={"paidAmount": 500, "idempotencyKey": "key-crash"},
        headers=founder,
    )

    assert r.status_code == 500
    assert r.json() == {"error": "Failed to convert lead"}
    assert await count_rows(Student) == 0
    assert await count_rows(Payment) == 0
    lead = await fetch(Lead, ids["lead_id"])
    invoice = await fetch(Invoice, ids["invoice_id"])
    assert lead.converted is False
    assert lead.student_id is None
    assert invoice.status == "PENDING"
    assert invoice.paid_amount == Decimal("0.00")
    assert (await fetch(Batch, ids["batch_id"])).enrolled_count == 0
    assert await count_rows(
        ConversionAttempt,
        ConversionAttempt.status == "FAILED",
        ConversionAttempt.error_message == "seat update failed",
    ) == 1
    assert await count_rows(
        AuditLog, AuditLog.action == "API_ERROR", AuditLog.severity == "CRITICAL"
    ) == 1

    monkeypatch.undo()
    retry = await client.post(
        _url(ids["invoice_id"]),
        json={"paidAmount": 500, "idempotencyKey": "key-crash"},
        headers=founder,
    )

    assert retry.status_code == 200
    assert await count_rows(Student) == 1
    assert (await fetch(Batch, ids["batch_id"])).enrolled_count == 1


# ============================================================
# Lookups, auth and rate limiting
# ============================================================

async def test_unknown_invoice_returns_404(client, founder):
    r = await client.post(
        _url("does-not-exist"),
        json={"paidAmount": 500, "idempotencyKey": "k"},
        headers=founder,
    )

    assert r.status_code == 404
    assert r.json() == {"error": "Invoice not found"}


async def test_invoice_without_lead_returns_404(client, founder, seed):
    ids = await seed(with_lead=False, with_batch=False)

    r = await client.post(
        _url(ids["invoice_id"]),
        json={"paidAmount": 500, "idempotencyKey": "k"},
        headers=founder,
    )

    assert r.status_code == 404
    assert r.json() == {"error": "Invoice has no associated lead"}


async def test_unknown_batch_returns_404(client, founder, seed, count_rows):
    ids = await seed()

    r = await client.post(
        _url(ids["invoice_id"]),
        json={"paidAmount": 500, "idempotencyKey": "k", "batchId": "missing"},
        headers=founder,
    )

    assert r.status_code == 404
    assert r.json() == {"error": "Batch not found"}
    assert await count_rows(ConversionAttempt) == 0


async def test_requires_token(client, seed):
    ids = await seed()

    r = await client.post(_url(ids["invoice_id"]), json={"paidAmount": 500, "idempotencyKey": "k"})

    assert r.status_code == 401
    assert r.json() == {"error": "Unauthorized"}


async def test_rejects_garbage_token(client, seed):
    ids = await seed()

    r = await client.post(
        _url(ids["invoice_id"]),
        json={"paidAmount": 500, "idempotencyKey": "k"},
        headers={"Authorization": "Bearer not-a-jwt"},
    )

    assert r.status_code == 401


async def test_roles_without_payment_create_are_forbidden(client, marketing, teacher, seed, count_rows):
    ids = await seed()

    for headers in (marketing, teacher):
        r = await client.post(
            _url(ids["invoice_id"]),
            json={"paidAmount": 500, "idempotencyKey": "k"},
            headers=headers,
        )
        assert r.status_code == 403
        assert r.json() == {"error": "Forbidden"}
    assert await count_rows(Student) == 0


async def test_strict_rate_limit(client, founder):
    url = _url("missing")
    payload = {"paidAmount": 500, "idempotencyKey": "k"}

    for _ in range(10):
        r = await client.post(url, json=payload, headers=founder)
        assert r.status_code == 404

    r = await client.post(url, json=payload, headers=founder)

    assert r.status_code == 429
    assert r.json()["error"] == "Too many requests"
    assert r.headers["X-RateLimit-Limit"] == "10"
    assert int(r.headers["Retry-After"]) > 0


async def test_rate_limit_ignores_forwarded_for_by_default(client, founder):
    url = _url("missing")
    payload = {"paidAmount": 500, "idempotencyKey": "k"}

    for i in range(10):
        headers = {**founder, "X-Forwarded-For": f"203.0.113.{i}"}
        r = await client.post(url, json=payload, headers=headers)
        assert r.status_code == 404

    r = await client.post(url, json=payload, headers={**founder, "X-Forwarded-For": "198.51.100.7"})

    assert r.status_code == 429


async def test_rate_limit_uses_forwarded_for_behind_trusted_proxy(client, founder, monkeypatch):
    monkeypatch.setattr(settings, "trust_proxy_headers", True)
    url = _url("missing")
    payload = {"paidAmount": 500, "idempotencyKey": "k"}

    for _ in range(10):
        r = await client.post(url, json=payload, headers={**founder, "X-Forwarded-For": "203.0.113.1"})
        assert r.status_code == 404

    blocked = await client.post(url, json=payload, headers={**founder, "X-Forwarded-For": "203.0.113.1"})
    other = await client.post(
        url, json=payload, headers={**founder, "X-Forwarded-For": "198.51.100.7, 10.0.0.2"}
    )

    assert blocked.status_code == 429
    assert other.status_code == 404
