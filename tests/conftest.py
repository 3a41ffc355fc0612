"""
Shared fixtures: an in-memory operational store seeded with jobs, contacts
and equipment, plus repository/cache/executor wiring around it.
"""
import pytest

from hvac_reports.adapters.operational import InMemoryDocumentStore, OperationalStoreAdapter
from hvac_reports.reports.analytics import ExecutionHistory
from hvac_reports.reports.cache import ResultCache
from hvac_reports.reports.catalog import get_catalog
from hvac_reports.reports.compiler import QueryCompiler
from hvac_reports.reports.executor import ReportExecutor
from hvac_reports.reports.repository import InMemoryReportRepository
from hvac_reports.reports.weighting import get_weighting_table


def make_jobs():
    """10 completed jobs (6 Mokotów, 4 Wola) plus 2 pending ones."""
    jobs = []
    for i in range(6):
        jobs.append({
            "_id": f"job-m{i}",
            "title": f"AC service {i}",
            "contactId": f"c{i % 3}",
            "status": "completed",
            "district": "Mokotów",
            "totalCost": 100.0 + i,
            "estimatedHours": 2.0,
            "routeEfficiency": 0.8,
            "scheduledDate": f"2024-07-{i + 1:02d}",
        })
    for i in range(4):
        jobs.append({
            "_id": f"job-w{i}",
            "title": f"Boiler repair {i}",
            "contactId": f"c{3 + i % 2}",
            "status": "completed",
            "district": "Wola",
            "totalCost": 200.0,
            "estimatedHours": 4.0,
            "routeEfficiency": 0.5,
            "scheduledDate": f"2024-01-{i + 10:02d}",
        })
    for i in range(2):
        jobs.append({
            "_id": f"job-p{i}",
            "title": f"Inspection {i}",
            "contactId": "c0",
            "status": "pending",
            "district": "Mokotów",
            "totalCost": 50.0,
            "estimatedHours": 1.0,
            "scheduledDate": "2024-08-01",
        })
    return jobs


def make_contacts():
    districts = ["Mokotów", "Mokotów", "Śródmieście", "Wola", "Wola", "Ursus"]
    return [
        {"_id": f"c{i}", "name": f"Client {i}", "district": d, "status": "active"}
        for i, d in enumerate(districts)
    ]


def make_equipment():
    return [
        {"_id": "e1", "name": "Split AC", "brand": "Daikin", "sellPrice": 200.0, "purchasePrice": 150.0},
        {"_id": "e2", "name": "Demo unit", "brand": "LG", "sellPrice": 0, "purchasePrice": 50.0},
        {"_id": "e3", "name": "Heat pump", "brand": "Mitsubishi", "sellPrice": 100.0, "purchasePrice": 60.0},
    ]


@pytest.fixture
def catalog():
    return get_catalog()


@pytest.fixture
def weighting_table():
    return get_weighting_table()


@pytest.fixture
def compiler(catalog):
    return QueryCompiler(catalog)


@pytest.fixture
def store():
    return InMemoryDocumentStore({
        "jobs": make_jobs(),
        "contacts": make_contacts(),
        "equipment": make_equipment(),
    })


@pytest.fixture
def cache():
    return ResultCache(max_entries=100, max_bytes=10 * 1024 * 1024, default_ttl=300)


@pytest.fixture
def history():
    return ExecutionHistory()


@pytest.fixture
def repository(cache, history):
    return InMemoryReportRepository(cache=cache, history=history)


@pytest.fixture
def executor(repository, store, cache, history):
    return ReportExecutor(repository, adapters=[OperationalStoreAdapter(store)], cache=cache, history=history)


def jobs_by_district_report(**overrides):
    data = {
        "name": "Completed jobs by district",
        "type": "chart",
        "dataSources": [{
            "id": "jobs",
            "type": "operational",
            "table": "jobs",
            "filters": [{"field": "status", "operator": "equals", "value": "completed"}],
        }],
        "visualization": {"type": "bar_chart", "groupBy": "district", "aggregation": "count"},
    }
    data.update(overrides)
    return data


@pytest.fixture
def jobs_report_data():
    """camelCase payload of the jobs-by-district report, as the API receives it."""
    return jobs_by_district_report()


@pytest.fixture
def margin_report_data():
    return {
        "name": "Equipment margin",
        "type": "table",
        "dataSources": [{"id": "equipment", "type": "operational", "table": "equipment"}],
        "calculatedFields": [
            {"name": "margin", "formula": "(sellPrice - purchasePrice) / sellPrice", "dataType": "number"},
        ],
        "visualization": {"type": "table"},
    }


@pytest.fixture
def jobs_report():
    """Builder for variants of the jobs-by-district payload."""
    return jobs_by_district_report


@pytest.fixture
def slow_store_collections():
    return {"jobs": make_jobs()}
