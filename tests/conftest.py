# tests/conftest.py
import json

import pandas as pd
import pytest

from mailshop_analytics.analysis import build_job_frame
from mailshop_analytics.etl import parse_job


def ms(day: str) -> int:
    """Epoch milliseconds, the backend's date format."""
    return int(pd.Timestamp(day).value // 1_000_000)


def job_record(id, client="Acme", client_id=1, quantity=1000, billing=0.0, cost=0.0,
               start=None, due=None, requirements=None, **extra):
    rec = {
        "id": id,
        "job_number": 1000 + id,
        "job_name": f"Job {id}",
        "client": json.dumps({"id": client_id, "name": client}),
        "clients_id": client_id,
        "quantity": quantity,
        "total_billing": str(billing),
        "estimated_cost": cost,
        "start_date": ms(start) if start else None,
        "due_date": ms(due) if due else None,
        "requirements": json.dumps(requirements or []),
    }
    rec.update(extra)
    return rec


def make_job(id, **kw):
    return parse_job(job_record(id, **kw))


@pytest.fixture()
def jobs():
    return [
        make_job(1, client="Acme", client_id=1, quantity=10000, billing=1000, cost=600,
                 start="2025-01-06", due="2025-01-10",
                 requirements=[{"process_type": "insert", "price_per_m": "60", "basic_oe": "#10", "pockets": "2"},
                               {"process_type": "inkjet", "price_per_m": "40", "paper_size": "6x9"}]),
        make_job(2, client="Acme", client_id=1, quantity=5000, billing=500, cost=450,
                 start="2025-01-13", due="2025-01-17",
                 requirements=[{"process_type": "Insert+", "price_per_m": "100", "basic_oe": "#10", "pockets": "3"}]),
        make_job(3, client="Beta Mail", client_id=2, quantity=2000, billing=400, cost=100,
                 start="2025-01-20", due="2025-01-24",
                 requirements=[{"process_type": "fold", "price_per_m": "200", "paper_size": "8.5x11",
                                "fold_type": "Tri-fold"}]),
        make_job(4, client="Gamma", client_id=3, quantity=1000, billing=100, cost=120,
                 start="2025-01-20", due="2025-01-22"),
    ]


@pytest.fixture()
def frame(jobs):
    return build_job_frame(jobs)
