"""
Vote Gateway Server

FastAPI front end for the vote engine.

Properties:
- Decisions are accepted only through the engine pipeline (gate, validator,
  commitment, ledger)
- Every error leaves as a stable envelope {code, message, retryable, http_status}
- Storage degradation surfaces as retryable 503s, never as partial records
- Optional API-key gate for the calling client application
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .auth import ApiKeyAuth
from .config import EngineConfig
from .engine import SubmitRequest, VoteEngine, build_engine_from_config
from .errors import (
    VoteError,
    VOTE_E_AUTH_REQUIRED,
    VOTE_E_BAD_REQUEST,
    VOTE_E_INTERNAL,
    VOTE_E_STORAGE_UNAVAILABLE,
    rejection,
    vote_error,
)
from .lockdown import StorageLockdownError
from .metrics import instrument_fastapi
from .models import RankedEntry
from .ops_stats import OPS_STATS

logger = logging.getLogger("vote_gateway")


# ---------------------------
# Request/Response Models
# ---------------------------

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RankingIn(_CamelModel):
    target_id: str = Field(alias="targetId")
    rank: int
    justification: Optional[str] = None


class SubmitRequestModel(_CamelModel):
    identity_token: Optional[str] = Field(default=None, alias="identityToken")
    evaluator_email: Optional[str] = Field(default=None, alias="evaluatorEmail")
    poll_id: Optional[str] = Field(default=None, alias="pollId")
    target_id: Optional[str] = Field(default=None, alias="targetId")
    target_ids: Optional[List[str]] = Field(default=None, alias="targetIds")
    rankings: Optional[List[RankingIn]] = None
    justification: Optional[str] = None

    def to_engine(self) -> SubmitRequest:
        return SubmitRequest(
            poll_id=self.poll_id,
            identity_token=self.identity_token,
            evaluator_email=self.evaluator_email,
            target_id=self.target_id,
            target_ids=self.target_ids,
            rankings=[
                RankedEntry(target_id=r.target_id, rank=r.rank, justification=r.justification)
                for r in self.rankings
            ] if self.rankings is not None else None,
            justification=self.justification,
        )


class ValidateRequestModel(_CamelModel):
    identity_token: Optional[str] = Field(default=None, alias="identityToken")
    evaluator_email: Optional[str] = Field(default=None, alias="evaluatorEmail")
    poll_id: Optional[str] = Field(default=None, alias="pollId")


def request_origin(req: Request) -> Optional[str]:
    """Best-effort client address: X-Forwarded-For, X-Real-IP, then the socket peer."""
    forwarded = (req.headers.get("X-Forwarded-For") or "").strip()
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    real_ip = (req.headers.get("X-Real-IP") or "").strip()
    if real_ip:
        return real_ip
    return req.client.host if req.client else None


# ---------------------------
# FastAPI App Factory
# ---------------------------

def create_app(engine: Optional[VoteEngine] = None, config: Optional[EngineConfig] = None) -> FastAPI:
    """Create FastAPI application with vote endpoints."""
    from . import __version__ as vote_version

    config = config or EngineConfig.from_env()
    if engine is None:
        engine = build_engine_from_config(config)

    app = FastAPI(
        title="Vote Gateway",
        description="Vote submission and tallying engine",
        version=vote_version,
    )
    app.state.engine = engine

    @app.exception_handler(VoteError)
    async def _vote_error_handler(request: Request, exc: VoteError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(request: Request, exc: RequestValidationError):
        fields = [
            {"loc": ".".join(str(p) for p in e.get("loc", ())), "msg": str(e.get("msg", ""))}
            for e in exc.errors()
        ]
        err = vote_error(VOTE_E_BAD_REQUEST, "Malformed request body", fields=fields)
        return JSONResponse(status_code=400, content=err.as_dict())

    @app.exception_handler(StorageLockdownError)
    async def _lockdown_handler(request: Request, exc: StorageLockdownError):
        OPS_STATS.record_storage_lockdown()
        err = vote_error(VOTE_E_STORAGE_UNAVAILABLE, "Decision store is temporarily unavailable",
                         retryable=True, http_status=503)
        return JSONResponse(status_code=503, content=err.as_dict())

    @app.exception_handler(Exception)
    async def _internal_error_handler(request: Request, exc: Exception):
        logger.error("unhandled error on %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        err = vote_error(VOTE_E_INTERNAL, "Internal server error", retryable=True, http_status=500)
        return JSONResponse(status_code=500, content=err.as_dict())

    api_auth = ApiKeyAuth.load_from_env()

    def _require_client(x_api_key: Optional[str]) -> Optional[str]:
        client_id, err = api_auth.resolve_client(x_api_key)
        if err:
            raise vote_error(VOTE_E_AUTH_REQUIRED, "API key required or invalid", http_status=401, reason=err)
        return client_id

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------
    metrics_token = (os.getenv("VOTE_METRICS_TOKEN", "") or "").strip()

    def _authorize_metrics(req: Request) -> bool:
        # If a dedicated metrics token is set, require it via:
        #   Authorization: Bearer <token>  OR  X-Metrics-Token: <token>
        if not metrics_token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token:
            return True
        return (req.headers.get("X-Metrics-Token") or "").strip() == metrics_token

    instrument_fastapi(app, authorize=_authorize_metrics)

    # Request body size limit (checks Content-Length).
    max_request_bytes = config.max_request_bytes

    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        cl = req.headers.get("content-length")
        if cl is not None:
            try:
                too_large = int(cl) > max_request_bytes
            except ValueError:
                err = vote_error(VOTE_E_BAD_REQUEST, "Malformed Content-Length")
                return JSONResponse(status_code=400, content=err.as_dict())
            if too_large:
                err = vote_error(VOTE_E_BAD_REQUEST, "Request body too large", http_status=413,
                                 max_request_bytes=max_request_bytes)
                return JSONResponse(status_code=413, content=err.as_dict())
        return await call_next(req)

    # ---------------------------
    # Vote endpoints
    # ---------------------------

    @app.post("/v1/vote/submit")
    async def submit_decision(
        body: SubmitRequestModel,
        http_request: Request,
        x_api_key: Optional[str] = Header(default=None, alias="X-Api-Key"),
    ):
        _require_client(x_api_key)
        result = await engine.submit(body.to_engine(), origin=request_origin(http_request))
        return result.to_dict()

    @app.post("/v1/vote/validate")
    async def validate_access(
        body: ValidateRequestModel,
        x_api_key: Optional[str] = Header(default=None, alias="X-Api-Key"),
    ):
        _require_client(x_api_key)
        if body.identity_token and not body.evaluator_email:
            return engine.check_credential(body.identity_token)
        if body.evaluator_email and not body.identity_token:
            if not body.poll_id:
                raise vote_error(VOTE_E_BAD_REQUEST, "pollId is required for evaluators")
            return engine.check_evaluator(body.poll_id, body.evaluator_email)
        raise rejection("missing-identity-selector", "Provide exactly one of identityToken or evaluatorEmail")

    @app.get("/v1/results/{poll_id}")
    async def poll_results(
        poll_id: str,
        x_api_key: Optional[str] = Header(default=None, alias="X-Api-Key"),
    ):
        _require_client(x_api_key)
        return engine.results(poll_id).to_dict()

    @app.get("/v1/anchors/{anchor_ref}")
    async def anchor_link(anchor_ref: str):
        return {"anchorRef": anchor_ref, "explorerUrl": engine.anchor.explorer_url(anchor_ref)}

    # ---------------------------
    # Ops endpoints
    # ---------------------------
    stats_token = (os.getenv("VOTE_STATS_TOKEN", "") or "").strip()
    raw_require = os.getenv("VOTE_STATS_REQUIRE_AUTH")
    if raw_require is None:
        stats_require_auth = config.is_prod
    else:
        stats_require_auth = raw_require.strip().lower() in ("1", "true", "yes", "on")

    def _authorize_stats(req: Request) -> bool:
        if not stats_require_auth:
            return True
        # Auth required but no token configured: deny.
        if not stats_token:
            return False
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == stats_token:
            return True
        return (req.headers.get("X-Stats-Token") or "").strip() == stats_token

    @app.get("/v1/stats")
    async def stats(http_request: Request):
        if not _authorize_stats(http_request):
            raise HTTPException(401, "STATS_UNAUTHORIZED")
        extra: Dict[str, Any] = {"lockdown_active": engine.circuit.is_lockdown_active()}
        return OPS_STATS.snapshot(extra=extra)

    @app.get("/v1/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "degraded" if engine.circuit.is_lockdown_active() else "healthy",
            "version": vote_version,
            "anchor": type(engine.anchor).__name__,
        }

    return app


def main():
    """
    Main entry point for the vote-gateway server.

    Usage:
        vote-gateway                    # Start on default port 8000
        vote-gateway --port 9000        # Start on custom port
        vote-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="Vote Gateway - decision submission and tallying",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    vote-gateway                         Start gateway on 0.0.0.0:8000
    vote-gateway --port 9000             Start on custom port
    vote-gateway --host 127.0.0.1        Bind to localhost only

Environment Variables:
    VOTE_DB_PATH          Path to SQLite database (default: vote_gateway.db)
    VOTE_AUDIT_LOG_PATH   Signed JSONL audit log (empty disables auditing)
    VOTE_ANCHOR_MODE      none | file | http
    VOTE_PROXY_HEADERS    If set (1/true), trust X-Forwarded-* headers (reverse proxy)
        """
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--proxy-headers", action="store_true", help="Trust X-Forwarded-* headers (for reverse proxy)")
    parser.add_argument("--forwarded-allow-ips", default=None, help="Comma-separated IPs allowed to set X-Forwarded-*")

    args = parser.parse_args()
    return serve(args.host, args.port, proxy_headers=args.proxy_headers, forwarded_allow_ips=args.forwarded_allow_ips)


def serve(host: str, port: int, *, proxy_headers: bool = False, forwarded_allow_ips: Optional[str] = None) -> int:
    import uvicorn

    print(f"Starting Vote Gateway on {host}:{port}")
    print("  Endpoints:")
    print("    POST /v1/vote/submit         - Submit a decision")
    print("    POST /v1/vote/validate       - Preview credential / evaluator access")
    print("    GET  /v1/results/{poll_id}   - Tally a poll")
    print("    GET  /v1/health              - Health check")
    print()

    app = create_app()

    env_proxy = os.environ.get("VOTE_PROXY_HEADERS", "").strip().lower()
    proxy_headers = proxy_headers or env_proxy in ("1", "true", "yes")
    forwarded_allow_ips = forwarded_allow_ips or os.environ.get("VOTE_FORWARDED_ALLOW_IPS")

    uvicorn.run(app, host=host, port=port, proxy_headers=proxy_headers, forwarded_allow_ips=forwarded_allow_ips)
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
