import json

import pytest
from sqlalchemy.exc import OperationalError

from promptr import access, webhooks
from promptr.models import UserAccess
from tests.conftest import make_event, sign_payload


def _checkout(email="new@promptr.io", customer="cus_A1"):
    return make_event(
        "checkout.session.completed",
        {"id": "cs_test_1", "customer": customer, "customer_email": email},
    )


def _for_customer(event_type, customer="cus_A1", **extra):
    return make_event(event_type, {"id": "obj_1", "customer": customer, **extra})


def test_full_lifecycle(send_event, db):
    resp = send_event(_checkout())
    assert resp.status_code == 200
    assert resp.text == "OK"

    record = access.get_by_email(db, "new@promptr.io")
    assert record.status == "trialing"
    assert record.stripe_customer_id == "cus_A1"
    assert record.access_token

    send_event(_for_customer("invoice.payment_succeeded"))
    db.refresh(record)
    assert record.status == "active"

    send_event(_for_customer("customer.subscription.deleted"))
    db.refresh(record)
    assert record.status == "inactive"


def test_checkout_replay_is_idempotent(send_event, db):
    event = _checkout()
    send_event(event)
    token = access.get_by_email(db, "new@promptr.io").access_token
    send_event(event)

    records = db.query(UserAccess).all()
    assert len(records) == 1
    assert records[0].status == "trialing"
    assert records[0].access_token == token


@pytest.mark.parametrize(
    "event_type,expected",
    [
        ("invoice.payment_succeeded", "active"),
        ("invoice.payment_failed", "inactive"),
        ("customer.subscription.deleted", "inactive"),
    ],
)
def test_status_events_replay_to_same_state(send_event, db, make_user, event_type, expected):
    record = make_user(status="trialing", customer_id="cus_A1")
    event = _for_customer(event_type)
    send_event(event)
    send_event(event)
    db.refresh(record)
    assert record.status == expected


def test_payment_failure_reaches_every_record_of_customer(send_event, db, make_user):
    first = make_user(email="one@promptr.io", status="active", customer_id="cus_A1")
    second = make_user(email="two@promptr.io", status="trialing", customer_id="cus_A1")

    assert send_event(_for_customer("invoice.payment_failed")).status_code == 200

    db.refresh(first)
    db.refresh(second)
    assert (first.status, second.status) == ("inactive", "inactive")


def test_checkout_for_existing_user_relinks_customer(send_event, db, make_user):
    record = make_user(email="back@promptr.io", status="inactive", customer_id="cus_OLD")
    token = record.access_token

    send_event(_checkout(email="Back@Promptr.io", customer="cus_NEW"))

    db.refresh(record)
    assert record.status == "trialing"
    assert record.stripe_customer_id == "cus_NEW"
    assert record.access_token == token


def test_checkout_uses_customer_details_email(send_event, db):
    event = make_event(
        "checkout.session.completed",
        {"id": "cs_2", "customer": "cus_B", "customer_email": None,
         "customer_details": {"email": "details@promptr.io"}},
    )
    send_event(event)
    assert access.get_by_email(db, "details@promptr.io").stripe_customer_id == "cus_B"


def test_checkout_without_customer_is_skipped(send_event, db):
    resp = send_event(make_event("checkout.session.completed", {"id": "cs_3", "customer_email": "x@promptr.io"}))
    assert resp.status_code == 200
    assert db.query(UserAccess).count() == 0


@pytest.mark.parametrize(
    "remote,start,expected",
    [
        ("active", "trialing", "active"),
        ("past_due", "active", "inactive"),
        ("unpaid", "active", "inactive"),
        ("canceled", "active", "inactive"),
        ("trialing", "active", "active"),
        ("incomplete", "inactive", "inactive"),
    ],
)
def test_subscription_updated_mapping(send_event, db, make_user, remote, start, expected):
    record = make_user(status=start, customer_id="cus_A1")
    send_event(_for_customer("customer.subscription.updated", status=remote))
    db.refresh(record)
    assert record.status == expected


@pytest.mark.parametrize("event_type", ["customer.subscription.trial_will_end", "invoice.created"])
def test_informational_events_leave_status(send_event, db, make_user, event_type):
    record = make_user(status="trialing", customer_id="cus_A1")
    assert send_event(_for_customer(event_type)).status_code == 200
    db.refresh(record)
    assert record.status == "trialing"


def test_unknown_event_type_is_ignored(send_event, db):
    resp = send_event(make_event("charge.refunded", {"id": "ch_1", "customer": "cus_A1"}))
    assert resp.status_code == 200
    assert db.query(UserAccess).count() == 0


def test_unmatched_customer_still_acknowledged(send_event):
    resp = send_event(_for_customer("invoice.payment_succeeded", customer="cus_UNKNOWN"))
    assert resp.status_code == 200


def test_database_failure_in_one_event_is_isolated(send_event, monkeypatch, db, make_user):
    def _boom(*args, **kwargs):
        raise OperationalError("UPDATE user_access", {}, Exception("database is locked"))

    monkeypatch.setattr(webhooks.access, "set_status_for_customer", _boom)
    resp = send_event(_for_customer("invoice.payment_succeeded"))
    assert resp.status_code == 200


def test_missing_signature_rejected(client):
    resp = client.post("/stripe-webhooks", content=json.dumps(_checkout()).encode())
    assert resp.status_code == 400


def test_bad_signature_rejected(client, db):
    payload = json.dumps(_checkout()).encode()
    resp = client.post(
        "/stripe-webhooks",
        content=payload,
        headers={"stripe-signature": sign_payload(payload, secret="whsec_wrong")},
    )
    assert resp.status_code == 400
    assert db.query(UserAccess).count() == 0


def test_unconfigured_secret_is_server_error(settings, db):
    from dataclasses import replace

    from tests.conftest import build_client

    client = build_client(replace(settings, stripe_webhook_secret=""), db)
    payload = json.dumps(_checkout()).encode()
    resp = client.post("/stripe-webhooks", content=payload, headers={"stripe-signature": sign_payload(payload)})
    assert resp.status_code == 500


def test_handle_event_reports_skips(db):
    assert webhooks.handle_event(db, make_event("payout.paid", {})) is False
    assert webhooks.handle_event(db, _checkout(email="direct@promptr.io")) is True
    assert access.get_by_email(db, "direct@promptr.io").status == "trialing"
