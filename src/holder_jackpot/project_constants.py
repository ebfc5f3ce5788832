"""
Fixed rules of the jackpot that are not operator-tunable.

Changing any of these changes who can win or how often the chain is polled,
so they live in code rather than in the environment.
"""

# Wrapped SOL mint; the pot and payouts are denominated in WSOL lamports.
WSOL_MINT = "So11111111111111111111111111111111111111112"

LAMPORTS_PER_SOL = 1_000_000_000

# Accounts that can hold the token but never take part in a draw.
NON_PARTICIPANT_ADDRESSES = frozenset(
    {
        "11111111111111111111111111111111",  # System program
        WSOL_MINT,
        "1nc1nerator11111111111111111111111111111111",  # Incinerator
        "6EF8rrecthR5Dkzon8NQtpjxarMxGrbz7QcGMw1gcx",  # Pump.fun program
        "9KJRLL6VHRo5Yvh9LHs4FciL4McCXZBQzgWDNg3aKXDY",  # bonding curve
    }
)
NON_PARTICIPANT_PREFIX = "1111111111111111111111111111111"

# Adaptive holder rescan schedule: (holder count below, seconds between scans).
RESCAN_TIERS = ((50, 5.0), (200, 15.0))
RESCAN_MAX_INTERVAL_S = 30.0

# Next spin must be at least this far in the future, else skip one interval.
SPIN_GUARD_WINDOW_S = 10.0

ROUND_HISTORY_LIMIT = 50
PAYOUT_HISTORY_LIMIT = 100

# How often the engine checks the spin deadline and refreshes the pot.
TICK_INTERVAL_S = 60.0
POT_UPDATE_INTERVAL_S = 10.0

# Confirmation polling for submitted transactions.
CONFIRM_POLL_INTERVAL_S = 2.0
CONFIRM_TIMEOUT_S = 60.0
