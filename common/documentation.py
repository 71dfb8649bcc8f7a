"""
OpenAPI configuration and long-form endpoint descriptions
"""
from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi
from typing import Dict, Any

ERROR_RESPONSE_SCHEMA = {
    "type": "object",
    "required": ["success", "error", "timestamp"],
    "properties": {
        "success": {"type": "boolean", "example": False},
        "error": {
            "type": "object",
            "required": ["code", "message"],
            "properties": {
                "code": {"type": "string", "example": "INVALID_STATE_TRANSITION"},
                "message": {"type": "string", "example": "Cannot release a trade in status PENDING"},
                "field": {"type": "string", "example": "amount"},
                "context": {"type": "object"},
            },
        },
        "timestamp": {"type": "number", "example": 1699123456.789},
        "trace_id": {"type": "string", "example": "abc123def456"},
        "request_id": {"type": "string", "example": "9f1c2e7a"},
    },
}

ERROR_STATUSES = {
    "400": "Bad Request",
    "401": "Unauthorized",
    "403": "Forbidden",
    "404": "Not Found",
    "409": "Conflict",
    "503": "Service Unavailable",
}

TAGS = [
    {"name": "Trades", "description": "Escrow trade lifecycle"},
    {"name": "Wallets", "description": "Custodial balances and ledger history"},
    {"name": "Swaps", "description": "BTC/USDT conversion at the platform rate"},
    {"name": "Health", "description": "Service health"},
]

def create_custom_openapi(app: FastAPI, title: str, version: str, description: str) -> Dict[str, Any]:
    """Build the OpenAPI schema once, adding bearer auth and the shared error envelope"""
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=title,
        version=version,
        description=description,
        routes=app.routes,
    )

    components = openapi_schema.setdefault("components", {})
    components["securitySchemes"] = {
        "bearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
            "description": "JWT whose `sub` claim is the user id"
        }
    }
    components.setdefault("schemas", {})["ErrorResponse"] = ERROR_RESPONSE_SCHEMA

    error_ref = {"application/json": {"schema": {"$ref": "#/components/schemas/ErrorResponse"}}}
    for path_item in openapi_schema["paths"].values():
        for operation in path_item.values():
            if isinstance(operation, dict) and "responses" in operation:
                for status, text in ERROR_STATUSES.items():
                    operation["responses"].setdefault(status, {"description": text, "content": error_ref})

    openapi_schema["tags"] = TAGS
    app.openapi_schema = openapi_schema
    return app.openapi_schema

SERVICE_DOCS = """
Peer-to-peer BTC/USDT marketplace escrow.

Trades move through `PENDING -> PAID -> COMPLETED`, or end in `DISPUTED`
or `CANCELLED`. Assets only move on release, as one atomic ledger transfer
from seller to buyer.
"""

OPEN_TRADE_DOCS = """
## Open Trade

Open a trade against an active advertisement. The advertisement's terms are
frozen into the trade, so later edits to the advertisement never change it.

- On a SELL advertisement the caller is the buyer; on a BUY advertisement
  the caller is the seller.
- `amount` is in fiat and must be within the advertisement limits.
- The seller's balance is checked here as a courtesy only. Nothing is held;
  release checks again under lock.

Send an `Idempotency-Key` header to make retries safe.
"""

RELEASE_DOCS = """
## Release Trade

Seller confirms the fiat payment arrived. The asset amount is moved from
seller to buyer in one ledger transaction and the trade becomes COMPLETED.
Of two concurrent releases exactly one succeeds; the other gets 409.
"""

SWAP_DOCS = """
## Execute Swap

Convert between BTC and USDT at the platform rate. The debit, the credit
and the swap record commit together. Send an `Idempotency-Key` header to
make retries safe.
"""
