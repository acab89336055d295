"""
Reposition module.

Contains analysis, auto-reposition policy, proposal building and settings.

ARCHITECTURE:
    RepositionDecisionEngine
        |
        +-- OnChainPositionReader (live position + pool state)
        +-- PriceSource (valuation of recovered liquidity)
        +-- TransactionBuilder (unsigned transaction assembly)
"""
