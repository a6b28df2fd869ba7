"""
Request Handlers

Framework-agnostic request handling: a handler takes an ApiRequest and
returns an ApiResponse. Routing, authentication and transport belong to
whatever hosts these (a web framework, a serverless adapter, a test).

DESIGN DECISION: Status codes are decided in ONE place. Services raise
the ledger's typed errors; BaseHandler.handle maps them:
- LedgerError subclasses -> their status_code, body {message, details}
- unsupported method     -> 405
- anything else          -> logged, 500 with a generic message
"""

import json
from typing import Any, Optional, Union

import structlog
from pydantic import BaseModel, Field

from pocketledger.audit import create_correlation_id
from pocketledger.errors import LedgerError, ValidationError
from pocketledger.ledger import (
    AccountService,
    BudgetService,
    CategoryService,
    RecurringRuleService,
    TransactionEngine,
)
from pocketledger.ledger.engine import require_user
from pocketledger.models.ledger import LedgerRecord


logger = structlog.get_logger("pocketledger.api")


class ApiRequest(BaseModel):
    """Transport-neutral inbound request."""
    method: str
    user_id: Optional[str] = None
    path_params: dict[str, str] = Field(default_factory=dict)
    query_params: dict[str, str] = Field(default_factory=dict)
    body: Optional[Union[str, dict, list]] = None


class ApiResponse(BaseModel):
    """Transport-neutral outbound response."""
    status_code: int
    body: Any = None
    headers: dict[str, str] = Field(
        default_factory=lambda: {"Content-Type": "application/json"}
    )

    def json_body(self) -> str:
        return json.dumps(self.body, ensure_ascii=False)


def parse_json(body: Any) -> Any:
    """Decode a request body; missing or undecodable bodies are a 400."""
    if body is None or body == "":
        raise ValidationError("Request body is required")
    if isinstance(body, (dict, list)):
        return body
    try:
        return json.loads(body)
    except (TypeError, ValueError):
        raise ValidationError("Request body must be valid JSON")


def to_body(value: Any) -> Any:
    """Serialize records (or lists of them) with persisted field names."""
    if isinstance(value, LedgerRecord):
        return value.to_item()
    if isinstance(value, list):
        return [to_body(v) for v in value]
    return value


def ok(value: Any, status_code: int = 200) -> ApiResponse:
    return ApiResponse(status_code=status_code, body=to_body(value))


def no_content() -> ApiResponse:
    return ApiResponse(status_code=204, body=None)


class BaseHandler:
    """Dispatch by method and translate errors into responses."""

    name = "handler"

    async def handle(self, request: ApiRequest) -> ApiResponse:
        try:
            user_id = require_user(request.user_id)
            method = getattr(self, f"on_{request.method.lower()}", None)
            if method is None:
                return ApiResponse(status_code=405, body={"message": "Method Not Allowed"})
            return await method(user_id, request)
        except LedgerError as e:
            if e.status_code >= 500:
                logger.error(f"{self.name}_dependency_failed", error=e.message)
            return ApiResponse(status_code=e.status_code, body=e.to_dict())
        except Exception:
            logger.exception(f"{self.name}_unhandled_error", method=request.method)
            return ApiResponse(status_code=500, body={"message": "Internal Server Error"})


def _path_param(request: ApiRequest, name: str) -> str:
    value = request.path_params.get(name)
    if not value:
        raise ValidationError(f"{name} path parameter is required")
    return value


# =============================================================================
# TRANSACTIONS
# =============================================================================

class TransactionsHandler(BaseHandler):
    name = "transactions"

    def __init__(self, engine: TransactionEngine):
        self.engine = engine

    async def on_get(self, user_id: str, request: ApiRequest) -> ApiResponse:
        txn_id = request.path_params.get("txnId")
        if txn_id:
            return ok(await self.engine.get_transaction(user_id, txn_id))
        return ok(await self.engine.list_transactions(
            user_id,
            request.query_params.get("from"),
            request.query_params.get("to"),
        ))

    async def on_post(self, user_id: str, request: ApiRequest) -> ApiResponse:
        txn = await self.engine.create_transaction(
            user_id, parse_json(request.body), create_correlation_id()
        )
        return ok(txn, 201)

    async def on_put(self, user_id: str, request: ApiRequest) -> ApiResponse:
        txn_id = _path_param(request, "txnId")
        txn = await self.engine.amend_transaction(
            user_id, txn_id, parse_json(request.body), create_correlation_id()
        )
        return ok(txn)

    on_patch = on_put

    async def on_delete(self, user_id: str, request: ApiRequest) -> ApiResponse:
        txn_id = _path_param(request, "txnId")
        await self.engine.delete_transaction(user_id, txn_id, create_correlation_id())
        return no_content()


# =============================================================================
# ACCOUNTS & CATEGORIES
# =============================================================================

class AccountsHandler(BaseHandler):
    name = "accounts"

    def __init__(self, service: AccountService):
        self.service = service

    async def on_get(self, user_id: str, request: ApiRequest) -> ApiResponse:
        account_id = request.path_params.get("accountId")
        if account_id:
            return ok(await self.service.get(user_id, account_id))
        return ok(await self.service.list(user_id))

    async def on_post(self, user_id: str, request: ApiRequest) -> ApiResponse:
        return ok(await self.service.create(user_id, parse_json(request.body)), 201)

    async def on_put(self, user_id: str, request: ApiRequest) -> ApiResponse:
        account_id = _path_param(request, "accountId")
        return ok(await self.service.update(user_id, account_id, parse_json(request.body)))

    async def on_delete(self, user_id: str, request: ApiRequest) -> ApiResponse:
        await self.service.delete(user_id, _path_param(request, "accountId"))
        return no_content()


class CategoriesHandler(BaseHandler):
    name = "categories"

    def __init__(self, service: CategoryService):
        self.service = service

    async def on_get(self, user_id: str, request: ApiRequest) -> ApiResponse:
        category_id = request.path_params.get("categoryId")
        if category_id:
            return ok(await self.service.get(user_id, category_id))
        return ok(await self.service.list(user_id))

    async def on_post(self, user_id: str, request: ApiRequest) -> ApiResponse:
        return ok(await self.service.create(user_id, parse_json(request.body)), 201)

    async def on_put(self, user_id: str, request: ApiRequest) -> ApiResponse:
        category_id = _path_param(request, "categoryId")
        return ok(await self.service.update(user_id, category_id, parse_json(request.body)))

    async def on_delete(self, user_id: str, request: ApiRequest) -> ApiResponse:
        await self.service.delete(user_id, _path_param(request, "categoryId"))
        return no_content()


# =============================================================================
# BUDGETS & RECURRING RULES
# =============================================================================

class BudgetsHandler(BaseHandler):
    """
    Budgets are addressed by month plus optional categoryId path params.
    GET without a month lists ?month= (default current month).
    """

    name = "budgets"

    def __init__(self, service: BudgetService):
        self.service = service

    async def on_get(self, user_id: str, request: ApiRequest) -> ApiResponse:
        month = request.path_params.get("month")
        category_id = request.path_params.get("categoryId")
        if month and category_id:
            return ok(await self.service.get(user_id, month, category_id))
        return ok(await self.service.list(user_id, month or request.query_params.get("month")))

    async def on_post(self, user_id: str, request: ApiRequest) -> ApiResponse:
        return ok(await self.service.create(user_id, parse_json(request.body)), 201)

    async def on_put(self, user_id: str, request: ApiRequest) -> ApiResponse:
        month = _path_param(request, "month")
        budget = await self.service.update(
            user_id, month, request.path_params.get("categoryId"), parse_json(request.body)
        )
        return ok(budget)

    async def on_delete(self, user_id: str, request: ApiRequest) -> ApiResponse:
        month = _path_param(request, "month")
        await self.service.delete(user_id, month, request.path_params.get("categoryId"))
        return no_content()


class RecurringRulesHandler(BaseHandler):
    name = "recurring"

    def __init__(self, service: RecurringRuleService):
        self.service = service

    async def on_get(self, user_id: str, request: ApiRequest) -> ApiResponse:
        rule_id = request.path_params.get("ruleId")
        if rule_id:
            return ok(await self.service.get(user_id, rule_id))
        return ok(await self.service.list(user_id))

    async def on_post(self, user_id: str, request: ApiRequest) -> ApiResponse:
        return ok(await self.service.create(user_id, parse_json(request.body)), 201)

    async def on_delete(self, user_id: str, request: ApiRequest) -> ApiResponse:
        await self.service.delete(user_id, _path_param(request, "ruleId"))
        return no_content()
