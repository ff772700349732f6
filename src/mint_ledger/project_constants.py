"""
Chain-wide constants and service defaults for the mint ledger.

Program ids are fixed by the chain. Everything collection-specific
(phases, tiers, gating floors) lives in the collection config, never here.
"""

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"

TOKEN_PROGRAMS = (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)

# Native currency of the launch chain (LOS uses 9 decimals, like SOL)
DEFAULT_CURRENCY = "LOS"
DEFAULT_CURRENCY_DECIMALS = 9

# Partial discount applied when a wallet clears only the lower floor
DEFAULT_PARTIAL_DISCOUNT_PCT = 50

# Scanner defaults
DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 1000
DEFAULT_POLL_INTERVAL_S = 30.0

# RPC defaults
DEFAULT_RPC_TIMEOUT_S = 30.0
DEFAULT_ELIGIBILITY_TIMEOUT_S = 10.0
DEFAULT_RPC_RETRIES = 3
DEFAULT_RPC_BACKOFF_S = 0.25

DEFAULT_STORE_PATH = "mint_ledger.json"

# How long a direct submission waits for a running background scan
DEFAULT_SUBMIT_WAIT_S = 10.0
