import os
from decimal import Decimal

from dotenv import load_dotenv

# 加载 .env 文件中的环境变量
load_dotenv()

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./usdc_wallet.db")

JWT_SECRET = os.getenv("JWT_SECRET", "change-me-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "1440"))

# Base network
BASE_RPC_URL = os.getenv("BASE_RPC_URL", "https://mainnet.base.org")
BASE_CHAIN_ID = int(os.getenv("BASE_CHAIN_ID", "8453"))
USDC_CONTRACT_ADDRESS = os.getenv("USDC_CONTRACT_ADDRESS", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913")
# unset: read once from the token contract
USDC_DECIMALS = int(os.getenv("USDC_DECIMALS")) if os.getenv("USDC_DECIMALS") else None
RPC_TIMEOUT_SECONDS = float(os.getenv("RPC_TIMEOUT_SECONDS", "10"))
MIN_GAS_BALANCE_ETH = Decimal(os.getenv("MIN_GAS_BALANCE_ETH", "0.001"))

# At-rest key for wallet signing keys; independent of backup passwords
WALLET_ENCRYPTION_KEY = os.getenv("WALLET_ENCRYPTION_KEY", "")

WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))

# Calendar used for daily/monthly tenant limits
LIMITS_TIMEZONE = os.getenv("LIMITS_TIMEZONE", "UTC")

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]


def is_production() -> bool:
    return ENVIRONMENT == "production"
