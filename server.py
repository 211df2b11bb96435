#!/usr/bin/env python3
"""
Memory Server — agent memory over MCP, behind a self-hosted OAuth 2.1 server.

Runs a streamable-http MCP endpoint at /mcp. Every request to it must carry
either a raw API key (Bearer msk_...) or an access token obtained through
the OAuth authorization-code + PKCE flow served by memory_oauth.py.

API keys live in the SQLite database next to the OAuth state and are
managed with the ``keys`` subcommand:

    server.py keys create --entity "Claude Desktop - Laptop"
    server.py keys list [--all]
    server.py keys show <id>
    server.py keys update <id> [--entity NAME] [--notes TEXT]
    server.py keys revoke <id>
"""

import argparse
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.transport_security import TransportSecuritySettings
from starlette.middleware.cors import CORSMiddleware
from starlette.types import ASGIApp, Receive, Scope, Send

from memory_config import ServerSettings, load_settings
from memory_oauth import MemoryOAuthMiddleware, _RateLimiter
from oauth_stores import (
    ApiKeyCredential,
    SQLiteCredentialStore,
    SQLiteDatabase,
    SQLiteEphemeralStore,
    create_api_key,
    revoke_api_key,
    update_api_key,
)
from oauth_tokens import TokenSigner

logger = logging.getLogger("memory-server")


# ---------------------------------------------------------------------------
# MCP Server
# ---------------------------------------------------------------------------

def build_mcp(settings: ServerSettings) -> FastMCP:
    mcp = FastMCP(
        "memory-server",
        instructions=(
            "Memory Server — persistent free-text memories for AI agents.\n"
            "  whoami — Show which API key / entity this session is acting as.\n"
        ),
        # One logical task per request; no in-process session map.
        stateless_http=True,
        streamable_http_path=settings.resource_path,
        # Disable DNS rebinding protection; we are usually behind a tunnel,
        # so the Host header is the public domain, not localhost.
        transport_security=TransportSecuritySettings(
            enable_dns_rebinding_protection=False,
        ),
    )

    @mcp.tool()
    async def whoami(ctx: Context) -> dict[str, Any]:
        """Return the authenticated principal for this request."""
        request = ctx.request_context.request
        principal = getattr(getattr(request, "state", None), "principal", None)
        if principal is None:
            return {"authenticated": False}
        return {
            "authenticated": True,
            "api_key_id": principal.api_key_id,
            "entity_name": principal.entity_name,
            "auth_type": principal.auth_type,
        }

    return mcp


class _RequestLogMiddleware:
    """Log method, path and auth kind of each HTTP request (never the credential)."""

    def __init__(self, inner: ASGIApp):
        self.inner = inner

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            hdrs = dict(scope.get("headers", []))
            auth = hdrs.get(b"authorization", b"").decode(errors="replace")
            kind = "none"
            if auth[:7].lower() == "bearer ":
                kind = "api_key" if auth[7:].startswith("msk_") else "token"
            ua = hdrs.get(b"user-agent", b"").decode(errors="replace")
            logger.info("recv: %s %s auth=%s ua=%s", scope.get("method", "?"),
                        scope.get("path", "?"), kind, ua[:60])
        await self.inner(scope, receive, send)


def create_app(settings: ServerSettings, db: SQLiteDatabase | None = None) -> ASGIApp:
    """Assemble MCP app + OAuth middleware + CORS."""
    db = db or SQLiteDatabase(settings.database_path)
    signer = TokenSigner(settings.jwt_secret, settings.issuer_url, settings.access_token_ttl)
    if not settings.jwt_secret:
        logger.warning("MEMORY_JWT_SECRET not set; OAuth token issuance is disabled, "
                       "raw API keys still work")

    app: ASGIApp = MemoryOAuthMiddleware(
        build_mcp(settings).streamable_http_app(),
        signer=signer,
        credentials=SQLiteCredentialStore(db),
        store=SQLiteEphemeralStore(db),
        issuer_url=settings.issuer_url,
        resource_path=settings.resource_path,
        registration_secret=settings.registration_secret,
        revoke_family_on_reuse=settings.revoke_family_on_reuse,
        refresh_token_ttl=settings.refresh_token_ttl,
        rate_limiter=_RateLimiter(settings.rate_limit_max_requests, settings.rate_limit_window),
        trust_cf_connecting_ip=settings.trust_cf_connecting_ip,
    )
    app = CORSMiddleware(
        app,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["WWW-Authenticate", "Mcp-Session-Id"],
    )
    return _RequestLogMiddleware(app)


# ---------------------------------------------------------------------------
# API key management
# ---------------------------------------------------------------------------

def _key_status(credential: ApiKeyCredential) -> str:
    if not credential.is_active:
        return "revoked"
    return "expired" if credential.is_expired() else "active"


def _print_key(credential: ApiKeyCredential) -> None:
    print(f"id:         {credential.id}")
    print(f"entity:     {credential.entity_name}")
    print(f"status:     {_key_status(credential)}")
    print(f"created:    {_format_ts(credential.created_at)}")
    print(f"last used:  {_format_ts(credential.last_used_at)}")
    print(f"expires:    {_format_ts(credential.expires_at)}")
    print(f"notes:      {credential.notes or ''}")


def _format_ts(ts: int | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


async def _keys_command(args: argparse.Namespace, settings: ServerSettings) -> int:
    db = SQLiteDatabase(settings.database_path)
    store = SQLiteCredentialStore(db)
    try:
        if args.keys_command == "create":
            credential, plaintext = await create_api_key(
                store, args.entity, notes=args.notes, expires_in_days=args.expires_in_days,
            )
            print(f"id:      {credential.id}")
            print(f"entity:  {credential.entity_name}")
            print(f"key:     {plaintext}")
            print("Save this API key now. It will not be shown again!")
            return 0

        if args.keys_command == "list":
            keys = await store.list_keys(include_inactive=args.all)
            for k in keys:
                print(f"{k.id}  {_key_status(k):8s} {k.entity_name}")
            print(f"{len(keys)} key(s)")
            return 0

        if args.keys_command == "show":
            credential = await store.get_by_id(args.id)
            if credential is None:
                print(f"no such key: {args.id}")
                return 1
            _print_key(credential)
            return 0

        if args.keys_command == "update":
            try:
                credential = await update_api_key(
                    store, args.id, entity_name=args.entity, notes=args.notes,
                )
            except ValueError as e:
                print(f"error: {e}")
                return 2
            if credential is None:
                print(f"no such key: {args.id}")
                return 1
            _print_key(credential)
            return 0

        if args.keys_command == "revoke":
            if await revoke_api_key(store, args.id):
                print(f"revoked {args.id}")
                return 0
            print(f"no such key or already revoked: {args.id}")
            return 1
    finally:
        db.close()
    return 2


def _setup_audit_log(path: str) -> None:
    """Audit logger — JSON-lines to its own file, not the console."""
    audit_log_path = Path(path).expanduser()
    audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(audit_log_path)
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger = logging.getLogger("memory-audit")
    audit_logger.addHandler(handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    parser = argparse.ArgumentParser(description="Memory MCP server")
    parser.add_argument("--config", type=Path, default=None,
                        help="YAML settings file (default: memory-server.yaml)")
    parser.set_defaults(command="serve", host="127.0.0.1", port=8787)
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--port", type=int, default=8787)
    serve.add_argument("--host", default="127.0.0.1")

    keys = sub.add_parser("keys", help="Manage API keys")
    keys_sub = keys.add_subparsers(dest="keys_command", required=True)
    create = keys_sub.add_parser("create")
    create.add_argument("--entity", required=True)
    create.add_argument("--notes", default=None)
    create.add_argument("--expires-in-days", type=int, default=None)
    listing = keys_sub.add_parser("list")
    listing.add_argument("--all", action="store_true", help="Include revoked keys")
    show = keys_sub.add_parser("show", help="Show one key (never the secret)")
    show.add_argument("id")
    update = keys_sub.add_parser("update", help="Change entity name and/or notes")
    update.add_argument("id")
    update.add_argument("--entity", default=None)
    update.add_argument("--notes", default=None)
    revoke = keys_sub.add_parser("revoke")
    revoke.add_argument("id")

    args = parser.parse_args(argv)
    settings = load_settings(args.config)

    if args.command == "keys":
        return asyncio.run(_keys_command(args, settings))

    import uvicorn

    _setup_audit_log(settings.audit_log_path)
    app = create_app(settings)
    logger.info(f"memory-server: starting HTTP server on {args.host}:{args.port} "
                f"(issuer {settings.issuer_url})")
    config = uvicorn.Config(app, host=args.host, port=args.port, log_level="info",
                            proxy_headers=True, forwarded_allow_ips="*")
    uvicorn.Server(config).run()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
