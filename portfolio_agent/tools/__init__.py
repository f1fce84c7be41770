OPERATION_REGISTRY = {
    "add_holding": {
        "name": "add_holding",
        "description": (
            "Adds a new holding, or a new lot to an existing holding of the same symbol "
            "(quantity and cost basis are combined as a weighted average)."
        ),
        "parameters": {
            "symbol": "ticker e.g. AAPL, META, BTC",
            "quantity": "number of units",
            "unitPrice": "price per unit; fetched from Yahoo Finance when omitted",
            "currency": "SGD | USD | INR",
            "category": "Core | Growth | Hedge | Liquidity",
            "location": "custodian e.g. IBKR, DBS",
        },
    },
    "edit_holding": {
        "name": "edit_holding",
        "description": "Renames or re-prices a holding, or moves it to another category or location.",
        "parameters": {
            "symbol": "existing ticker",
            "newSymbol": "optional new ticker",
            "name": "optional new company name",
            "location": "optional new custodian",
            "category": "optional new category",
            "quantity": "optional new quantity",
            "unitPrice": "optional new buy price",
            "currentUnitPrice": "optional new market price",
            "manualPricing": "optional bool",
        },
    },
    "delete_holding": {
        "name": "delete_holding",
        "description": "Removes a holding completely.",
        "parameters": {"symbol": "existing ticker"},
    },
    "reduce_holding": {
        "name": "reduce_holding",
        "description": "Sells part of a holding. Selling exactly the held amount removes it.",
        "parameters": {
            "symbol": "existing ticker",
            "quantity": "units to sell, or \"half\" / \"all\"",
            "unitPrice": "optional sale price",
            "currency": "SGD | USD | INR",
        },
    },
    "increase_holding": {
        "name": "increase_holding",
        "description": "Buys more of an existing holding at a given price.",
        "parameters": {
            "symbol": "existing ticker",
            "quantity": "units to add",
            "unitPrice": "price per unit",
            "currency": "SGD | USD | INR",
        },
    },
    "add_yearly_data": {
        "name": "add_yearly_data",
        "description": "Records or updates income, expenses, savings, net worth or market gains for a year.",
        "parameters": {
            "year": "four-digit year",
            "income": "optional",
            "expenses": "optional",
            "netWorth": "optional",
            "savings": "optional",
            "marketGains": "optional",
        },
    },
    "portfolio_analysis": {
        "name": "portfolio_analysis",
        "description": "Summarizes holdings count, total value and category allocation.",
        "parameters": {},
    },
}

AVAILABLE_OPERATIONS = list(OPERATION_REGISTRY)
