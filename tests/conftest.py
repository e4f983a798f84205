import os
from datetime import datetime

import pytest

from trust_monitor import create_app
from trust_monitor.models import db as _db, Order
from trust_monitor.services.monitor_agent import get_monitor

ADMIN_KEY = "test-admin-key"


@pytest.fixture(scope="session")
def app():
    os.environ["FLASK_ENV"] = "testing"
    app = create_app("testing")
    with app.app_context():
        _db.create_all()
        yield app
        get_monitor(app).stop()
        _db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def _clean_tables(app):
    yield
    _db.session.rollback()
    for table in reversed(_db.metadata.sorted_tables):
        _db.session.execute(table.delete())
    _db.session.commit()


@pytest.fixture()
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture()
def monitor(app):
    return get_monitor(app)


@pytest.fixture()
def make_order(app):
    counter = {"n": 0}

    def _make(**kw):
        counter["n"] += 1
        now = datetime.utcnow()
        fields = dict(
            order_id=f"order-{counter['n']}",
            buyer_address="0x00000000000000000000000000000000000000b1",
            seller_address="0x0000000000000000000000000000000000000051",
            quantity=1,
            amount=50.0,
            status="CREATED",
            created_at=now,
            updated_at=now,
        )
        fields.update(kw)
        order = Order(**fields)
        _db.session.add(order)
        _db.session.commit()
        return order

    return _make
