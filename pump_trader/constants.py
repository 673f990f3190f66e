from solders.pubkey import Pubkey

# ============================================
# PROGRAM IDS
# ============================================
PUMP_PROGRAM = Pubkey.from_string("6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P")

BONDING_CURVE_SEED = b"bonding-curve"

# ============================================
# BONDING CURVE
# ============================================
LAMPORTS_PER_SOL = 1_000_000_000
TOKEN_DECIMALS = 6
TOKEN_UNIT = 10 ** TOKEN_DECIMALS

# Virtual reserves at launch: 30 SOL against ~1.073B tokens.
INITIAL_VIRTUAL_SOL = 30.0
# Token reserve left on the curve when it is fully sold through.
CURVE_FINAL_TOKEN_RESERVE = 206_900_000
# Tokens sold between launch and graduation.
CURVE_SELLABLE_TOKENS = 793_100_000

# Quotes are SOL per token scaled to SOL per million tokens.
PRICE_SCALE = 1e6

# Byte offsets inside the bonding curve account (after the 8-byte discriminator).
CURVE_VTOKEN_OFFSET = 8
CURVE_VSOL_OFFSET = 16

# Rent paid to open an associated token account, reclaimed on full exit.
ATA_RENT_SOL = 0.00204
