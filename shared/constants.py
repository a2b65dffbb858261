"""
Shared constants for the subscription ledger.

Event signatures of the SubscriptionManager / SubscriptionNFT contracts,
numeric limits and default values used across modules.
"""

# ---------------------------------------------------------------------------
# Event signatures (canonical ABI form, hashed to topic0 by the codec)
# ---------------------------------------------------------------------------

# SubscriptionManager
SIG_MERCHANT_REGISTERED = "MerchantRegistered(uint256,address,address)"
SIG_MERCHANT_WITHDRAWAL = "MerchantWithdrawal(uint256,address,uint256,address)"
SIG_PAYMENT_RECEIVED = "PaymentReceived(address,uint256,address,uint256,uint256,uint64)"

# SubscriptionNFT
SIG_SUBSCRIPTION_MINTED = "SubscriptionMinted(address,uint256,uint64,uint32)"
SIG_SUBSCRIPTION_RENEWED = "SubscriptionRenewed(address,uint256,uint64,uint32)"
SIG_SUBSCRIPTION_BURNED = "SubscriptionBurned(address,uint256)"
SIG_SUBSCRIPTION_EXPIRED = "SubscriptionExpired(address,uint256)"

# Contract keys used in chain config ("contracts" section)
CONTRACT_SUBSCRIPTION_MANAGER = "subscription_manager"
CONTRACT_SUBSCRIPTION_NFT = "subscription_nft"

# ---------------------------------------------------------------------------
# Addresses
# ---------------------------------------------------------------------------

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
NATIVE_TOKEN_ADDRESS = ZERO_ADDRESS  # payments in the chain's native coin

# ---------------------------------------------------------------------------
# Numeric constants
# ---------------------------------------------------------------------------

PERCENT = 100

# ---------------------------------------------------------------------------
# Defaults (used when config keys are missing)
# ---------------------------------------------------------------------------

DEFAULT_POLL_INTERVAL_SECONDS = 2.0
DEFAULT_CONFIRMATION_BLOCKS = 2
DEFAULT_MAX_BLOCK_RANGE = 5000
DEFAULT_TIMESTAMP_CONCURRENCY = 8
DEFAULT_TIMESTAMP_CACHE_ENTRIES = 5000
DEFAULT_MAX_EVENTS_PER_KEY = 10_000
DEFAULT_TOP_TOKENS_LIMIT = 10
UNKNOWN_TOKEN_SYMBOL = "UNKNOWN"
NATIVE_TOKEN_SYMBOL = "ETH"  # fallback when a chain config lists no native symbol
