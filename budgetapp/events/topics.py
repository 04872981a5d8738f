"""Event type strings published by the budget service layer."""


class EventTypes:
    """Known event types. Subscriptions match these exactly or by prefix ('expense.*')."""

    # Expense lifecycle; published after the write commits
    EXPENSE_CREATED = "expense.created"
    EXPENSE_UPDATED = "expense.updated"
    EXPENSE_DELETED = "expense.deleted"

    INCOME_SOURCE_CREATED = "income_source.created"
    INCOME_SOURCE_UPDATED = "income_source.updated"
    INCOME_SOURCE_DELETED = "income_source.deleted"

    BUDGET_SOURCE_CREATED = "budget_source.created"
    BUDGET_SOURCE_UPDATED = "budget_source.updated"
    BUDGET_SOURCE_DELETED = "budget_source.deleted"

    USER_LOGIN = "user.login"
    USER_LOGOUT = "user.logout"
    USER_CREATED = "user.created"

    # Category spend went over its budget source for the month
    BUDGET_EXCEEDED = "budget.exceeded"

    MONTHLY_DATA_UPDATED = "monthly_data.updated"
    SYSTEM_HEALTH = "system.health"
    DATA_EXPORT = "data.export"
    DATA_IMPORT = "data.import"
    SECURITY_ALERT = "security.alert"

    # Free-form payload; the event type is chosen by the publisher
    GENERIC = "generic"


# Wildcard patterns understood by EventBus.subscribe_pattern
MATCH_ALL = "*"
