"""
HTTP API for Tally Sync.

Thin FastAPI wrapper over the orchestrator: trigger a sync for a tenant,
read sync metadata and cursors, and page through synced records.
"""
from __future__ import annotations
import threading
from datetime import date, datetime
from typing import Any, Callable, Optional
from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from . import __version__
from .cancel import CancelToken
from .client import TallyClient
from .config import SyncConfig
from .loaders import PostgresStore
from .models import Category, SyncType, Tenant
from .sync import TallySync
from .tables import TableConfig, TableConfigError, load_table_config
from .tracking import CATEGORY_KEYS

API_PREFIX = "/api/v1"

ClientFactory = Callable[[SyncConfig, Tenant], Any]


class APIResponse(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    count: Optional[int] = None
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())


class SyncRequest(BaseModel):
    mode: SyncType = "incremental"
    tables: Optional[list[str]] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    company_name: Optional[str] = None
    tally_url: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0)


def _default_client(config: SyncConfig, tenant: Tenant) -> TallyClient:
    return TallyClient(config, url=tenant.tally_url, company=tenant.company_name)


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=APIResponse(success=False, error=message).model_dump(),
    )


def create_app(
    config: Optional[SyncConfig] = None,
    store=None,
    tables: Optional[TableConfig] = None,
    client_factory: Optional[ClientFactory] = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        config: Settings (defaults from environment)
        store: Shared SyncStore (defaults to PostgresStore)
        tables: Table catalogue (defaults to the configured tables.yaml)
        client_factory: Builds a Tally client for a tenant
    """
    config = config or SyncConfig.from_env()
    tables = tables or load_table_config(config.table_config)
    store = store if store is not None else PostgresStore(config)
    client_factory = client_factory or _default_client

    # One run at a time per tenant
    running: set[tuple[str, str]] = set()
    running_lock = threading.Lock()

    app = FastAPI(
        title="Tally Sync API",
        description="Trigger Tally to PostgreSQL syncs and read synced data.",
        version=__version__,
    )
    app.state.config = config
    app.state.store = store
    app.state.tables = tables

    @app.get(f"{API_PREFIX}/health", tags=["Health"])
    def health(check_tally: bool = Query(False)):
        data: dict[str, Any] = {
            "status": "healthy",
            "version": __version__,
            "tables": [t.name for t in tables.all()],
        }
        if check_tally:
            client = client_factory(config, config.tenant())
            try:
                data["tally"] = client.test_connection()
            finally:
                client.close()
            if data["tally"]["status"] == "failed":
                data["status"] = "degraded"
        return APIResponse(success=True, data=data)

    @app.post(f"{API_PREFIX}/sync/{{company_id}}/{{division_id}}", tags=["Sync"])
    def trigger_sync(company_id: str, division_id: str, body: Optional[SyncRequest] = None):
        request = body or SyncRequest()
        tenant = Tenant(
            company_id=company_id,
            division_id=division_id,
            company_name=request.company_name or config.tally_company,
            tally_url=request.tally_url or config.tally_url,
        )
        with running_lock:
            if tenant.key in running:
                return error_response(409, f"Sync already running for {company_id}/{division_id}")
            running.add(tenant.key)

        client = client_factory(config, tenant)
        try:
            sync = TallySync(config, tenant=tenant, store=store, client=client, tables=tables)
            token = CancelToken(request.timeout) if request.timeout else None
            summary = sync.run(
                request.mode,
                tables=request.tables,
                from_date=request.from_date,
                to_date=request.to_date,
                cancel_token=token,
            )
        except ValueError as e:
            return error_response(400, str(e))
        except Exception as e:
            logger.exception(f"Sync for {company_id}/{division_id} failed: {e}")
            return error_response(500, f"sync: {e}")
        finally:
            client.close()
            with running_lock:
                running.discard(tenant.key)

        return APIResponse(
            success=summary.success,
            data=summary.model_dump(mode="json"),
            error="; ".join(summary.errors) or None,
            count=summary.records_processed,
        )

    @app.get(f"{API_PREFIX}/metadata/{{company_id}}/{{division_id}}", tags=["Sync"])
    def get_metadata(company_id: str, division_id: str):
        try:
            entries = store.list_sync_metadata(company_id, division_id)
        except Exception as e:
            logger.exception(f"Reading sync metadata failed: {e}")
            return error_response(500, f"metadata: {e}")

        cursors = {}
        for category in Category:
            key = CATEGORY_KEYS[category]
            values = [int(m.metadata[key]) for m in entries if m.metadata.get(key) is not None]
            cursors[key] = max(values, default=0)

        return APIResponse(
            success=True,
            data={"tables": [m.model_dump(mode="json") for m in entries], **cursors},
            count=len(entries),
        )

    @app.get(f"{API_PREFIX}/records/{{company_id}}/{{division_id}}/{{table}}", tags=["Records"])
    def get_records(
        company_id: str,
        division_id: str,
        table: str,
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
    ):
        try:
            target = tables.target_table(table)
        except TableConfigError as e:
            return error_response(404, str(e))

        try:
            rows = store.fetch_records(target, company_id, division_id, limit=limit, offset=offset)
        except Exception as e:
            logger.exception(f"Reading {table} failed: {e}")
            return error_response(500, f"records: {e}")
        return APIResponse(success=True, data=rows, count=len(rows))

    return app
