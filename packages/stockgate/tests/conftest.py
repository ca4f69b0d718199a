"""Shared fixtures: a throwaway SQLite database with a small electrical catalog."""

import pytest

from stockgate.db import CatalogItemRow, init_db, make_engine, make_session_factory
from stockgate.types import RequestContext

COMPANY = "co-1"
OTHER_COMPANY = "co-2"


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'stockgate.db'}")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def catalog_rows(session_factory):
    """Seed the catalog and return {name: id}."""
    rows = [
        CatalogItemRow(id="mc-122", company_id=COMPANY, branch_id="b1", item_name="12/2 MC Cable",
                       category="Wire", unit="ft", current_qty=500, par_level=1000),
        CatalogItemRow(id="thhn-4", company_id=COMPANY, branch_id="b1", item_name="#4 THHN Wire",
                       category="Wire", unit="ft", current_qty=250, par_level=100),
        CatalogItemRow(id="emt-34", company_id=COMPANY, branch_id="b1", item_name='3/4" EMT Conduit',
                       category="Conduit", unit="ea", current_qty=40, par_level=50),
        CatalogItemRow(id="brk-20", company_id=COMPANY, branch_id="b1", item_name="20A Breaker",
                       category="Breakers", unit="ea", current_qty=12, par_level=10),
        CatalogItemRow(id="brk-30", company_id=COMPANY, branch_id="b1", item_name="30A Breaker",
                       category="Breakers", unit="ea", current_qty=3, par_level=10),
        CatalogItemRow(id="other-1", company_id=OTHER_COMPANY, branch_id="x1", item_name="12/2 MC Cable",
                       category="Wire", unit="ft", current_qty=9, par_level=0),
    ]
    with session_factory() as session:
        session.add_all(rows)
        session.commit()
    return {r.item_name: r.id for r in rows if r.company_id == COMPANY}


@pytest.fixture
def field_ctx():
    return RequestContext(user_id="u-field", company_id=COMPANY, role="FIELD", branch_id="b1")


@pytest.fixture
def warehouse_ctx():
    return RequestContext(user_id="u-wh", company_id=COMPANY, role="WAREHOUSE", branch_id="b1")
