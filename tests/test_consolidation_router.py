"""
LedgerMesh - Consolidation API Tests

Endpoint tests against the FastAPI app with the repository dependencies
overridden by the in-memory fake.
"""

from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from prometheus_client import CollectorRegistry

from conftest import ALPHA, BETA, FakeConsolidationRepository, profit_loss_rows, shared_scope
from ledgermesh.config import Settings
from ledgermesh.dependencies import get_consolidation_repository, get_repository_scope
from ledgermesh.routers.consolidation import WARNING_HEADER, _for_export, parse_filters
from ledgermesh.services.consolidation_metrics import ConsolidationCacheMetrics
from ledgermesh.services.consolidation_service import FilterValidationError
from main import create_app


@pytest.fixture
def repository() -> FakeConsolidationRepository:
    return FakeConsolidationRepository(rows=profit_loss_rows())


@pytest.fixture
def app(repository):
    application = create_app(
        app_settings=Settings(_env_file=None),
        metrics=ConsolidationCacheMetrics(registry=CollectorRegistry()),
    )
    application.dependency_overrides[get_consolidation_repository] = lambda: repository
    application.dependency_overrides[get_repository_scope] = lambda: shared_scope(repository)
    return application


@pytest_asyncio.fixture(scope="function")
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class TestParseFilters:
    """Test query string parsing."""
    
    def test_defaults(self):
        filters = parse_filters("1", "2024-01", None, None)
        assert filters.group_id == 1
        assert filters.entities == ()
        assert filters.fx_on is False
    
    def test_entities_deduplicated_in_order(self):
        filters = parse_filters("1", "2024-01", "3, 2,3", "on")
        assert filters.entities == (3, 2)
        assert filters.fx_on is True
    
    def test_all_keyword(self):
        assert parse_filters("1", "2024-01", "ALL", "off").entities == ()
    
    def test_collects_every_error(self):
        with pytest.raises(FilterValidationError) as exc_info:
            parse_filters("abc", "2024/01", "1,x", "maybe")
        assert set(exc_info.value.errors) == {"group", "period", "entities", "fx"}
    
    def test_export_error_is_a_fresh_400(self):
        original = FilterValidationError({"period": "invalid period format, expected YYYY-MM"})
        
        exported = _for_export(original)
        
        assert exported is not original
        assert exported.status_code == 400
        assert original.status_code == 422
        assert exported.errors == original.errors
        assert exported.to_dict()["code"] == "INVALID_FILTERS"


class TestReportEndpoints:
    
    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["pdf_export"] is False
    
    @pytest.mark.asyncio
    async def test_profit_loss_view(self, client: AsyncClient):
        response = await client.get("/api/v1/consolidation/pl", params={"group": "1", "period": "2024-01"})
        
        assert response.status_code == 200
        data = response.json()
        assert Decimal(str(data["totals"]["net_income"])) == Decimal("150")
        assert data["filters"] == {"group_id": 1, "period": "2024-01", "entities": [], "fx_on": False}
        assert data["errors"] == {}
        assert WARNING_HEADER not in response.headers
    
    @pytest.mark.asyncio
    async def test_invalid_filters_render_inline(self, client: AsyncClient, repository):
        response = await client.get("/api/v1/consolidation/tb", params={"group": "1", "period": "January"})
        
        assert response.status_code == 200
        data = response.json()
        assert "period" in data["errors"]
        assert data["lines"] == []
        assert repository.calls["consol_balances_by_type"] == 0
    
    @pytest.mark.asyncio
    async def test_trial_balance_rejects_foreign_entity(self, client: AsyncClient):
        response = await client.get(
            "/api/v1/consolidation/tb", params={"group": "1", "period": "2024-01", "entities": "99"},
        )
        assert response.status_code == 200
        assert "entities" in response.json()["errors"]
    
    @pytest.mark.asyncio
    async def test_unknown_group_is_404(self, client: AsyncClient):
        response = await client.get("/api/v1/consolidation/tb", params={"group": "42", "period": "2024-01"})
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "GROUP_NOT_FOUND"
    
    @pytest.mark.asyncio
    async def test_unknown_report(self, client: AsyncClient):
        response = await client.get("/api/v1/consolidation/cf", params={"group": "1", "period": "2024-01"})
        assert response.status_code == 422
    
    @pytest.mark.asyncio
    async def test_warning_header(self, client: AsyncClient, repository):
        repository.currencies[1] = {ALPHA: "USD", BETA: "IDR"}
        
        response = await client.get(
            "/api/v1/consolidation/pl", params={"group": "1", "period": "2024-01", "fx": "on"},
        )
        
        assert response.status_code == 200
        assert response.headers[WARNING_HEADER] == "FX rate missing for IDRUSD at 2024-01"
        assert response.json()["filters"]["fx_on"] is False
    
    @pytest.mark.asyncio
    async def test_entities_deduplicated(self, client: AsyncClient):
        response = await client.get(
            "/api/v1/consolidation/pl", params={"group": "1", "period": "2024-01", "entities": "2,2"},
        )
        data = response.json()
        assert data["filters"]["entities"] == [2]
        assert Decimal(str(data["totals"]["revenue"])) == Decimal("500")
    
    @pytest.mark.asyncio
    async def test_repeated_requests_served_from_cache(self, client: AsyncClient, repository, app):
        params = {"group": "1", "period": "2024-01"}
        await client.get("/api/v1/consolidation/pl", params=params)
        await client.get("/api/v1/consolidation/pl", params=params)
        
        assert repository.calls["consol_balances_by_type"] == 1
        assert app.state.metrics.value("cache_hits_total", "pl", 1, "2024-01") == 1
        
        metrics = await client.get("/metrics")
        assert "ledgermesh_consol_cache_hits_total" in metrics.text


class TestExportEndpoints:
    
    @pytest.mark.asyncio
    async def test_csv_export(self, client: AsyncClient):
        response = await client.get(
            "/api/v1/consolidation/pl/export.csv", params={"group": "1", "period": "2024-01"},
        )
        
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.headers["content-disposition"] == "attachment; filename=pl-1-2024-01.csv"
        body = response.text
        assert body.startswith("# Report: Consolidated Profit & Loss\r\n")
        assert "Totals,,Net Income,,150.00\r\n" in body
    
    @pytest.mark.asyncio
    async def test_csv_invalid_filters_is_400(self, client: AsyncClient):
        response = await client.get("/api/v1/consolidation/bs/export.csv", params={"group": "0", "period": "2024-01"})
        
        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["code"] == "INVALID_FILTERS"
        assert "group" in detail["details"]["fields"]
    
    @pytest.mark.asyncio
    async def test_csv_carries_warning_header(self, client: AsyncClient, repository):
        repository.currencies[1] = {ALPHA: "USD", BETA: "IDR"}
        response = await client.get(
            "/api/v1/consolidation/bs/export.csv", params={"group": "1", "period": "2024-01", "fx": "on"},
        )
        assert response.status_code == 200
        assert response.headers[WARNING_HEADER] == "FX rate missing for IDRUSD at 2024-01"
    
    @pytest.mark.asyncio
    async def test_pdf_disabled(self, client: AsyncClient):
        response = await client.get("/api/v1/consolidation/tb/pdf", params={"group": "1", "period": "2024-01"})
        assert response.status_code == 503
        assert response.json()["detail"]["code"] == "PDF_EXPORT_DISABLED"


class TestMaintenanceEndpoints:
    
    @pytest.mark.asyncio
    async def test_rebuild_busts_cache(self, client: AsyncClient, repository):
        params = {"group": "1", "period": "2024-01"}
        await client.get("/api/v1/consolidation/pl", params=params)
        
        response = await client.post("/api/v1/consolidation/rebuild", json={"group_id": 1, "period": "2024-01"})
        
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert repository.rebuilt == [(1, 10)]
        
        await client.get("/api/v1/consolidation/pl", params=params)
        assert repository.calls["consol_balances_by_type"] == 2
    
    @pytest.mark.asyncio
    async def test_rebuild_unknown_period(self, client: AsyncClient):
        response = await client.post("/api/v1/consolidation/rebuild", json={"group_id": 1, "period": "2099-01"})
        assert response.status_code == 404
    
    @pytest.mark.asyncio
    async def test_rebuild_validates_body(self, client: AsyncClient):
        response = await client.post("/api/v1/consolidation/rebuild", json={"group_id": 0, "period": "2024-01"})
        assert response.status_code == 422
    
    @pytest.mark.asyncio
    async def test_refresh_all(self, client: AsyncClient, repository):
        response = await client.post("/api/v1/consolidation/refresh", json={})
        
        assert response.status_code == 200
        data = response.json()
        assert data["period"] == "2024-01"
        assert data["rebuilt"] == [1]
        assert data["failed"] == {}
    
    @pytest.mark.asyncio
    async def test_upsert_fx_rate(self, client: AsyncClient, repository):
        response = await client.post(
            "/api/v1/consolidation/fx-rates",
            json={"as_of": "2024-01-15", "pair": "sgdusd", "average_rate": "0.5", "closing_rate": "0.75"},
        )
        
        assert response.status_code == 200
        data = response.json()
        assert data["as_of"] == "2024-01-01"
        assert data["pair"] == "SGDUSD"
        assert Decimal(str(data["closing_rate"])) == Decimal("0.75")
        assert repository.calls["upsert_fx_rate"] == 1
    
    @pytest.mark.asyncio
    async def test_upsert_fx_rate_rejects_zero(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/consolidation/fx-rates",
            json={"as_of": "2024-01-15", "pair": "SGDUSD", "average_rate": "0", "closing_rate": "0.75"},
        )
        assert response.status_code == 422
