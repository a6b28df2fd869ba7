"""Transport-neutral request handlers."""

from pocketledger.api.handlers import (
    AccountsHandler,
    ApiRequest,
    ApiResponse,
    BudgetsHandler,
    CategoriesHandler,
    RecurringRulesHandler,
    TransactionsHandler,
)

__all__ = [
    "AccountsHandler",
    "ApiRequest",
    "ApiResponse",
    "BudgetsHandler",
    "CategoriesHandler",
    "RecurringRulesHandler",
    "TransactionsHandler",
]
