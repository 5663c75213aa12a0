import os
from dotenv import load_dotenv

load_dotenv()

# Engine versioning
ENGINE_VERSION = os.getenv('ENGINE_VERSION', 'v1')

# Cadence & tick bounds
LOOP_INTERVAL_SECONDS = int(os.getenv('LOOP_INTERVAL_SECONDS', '300'))  # scheduler cadence (default 5 min)
TICK_DEADLINE_SECONDS = int(os.getenv('TICK_DEADLINE_SECONDS', '240'))  # must finish well before next tick
MAX_CONCURRENT_SESSIONS = int(os.getenv('MAX_CONCURRENT_SESSIONS', '8'))  # fan-out cap per tick

# Market data
CANDLE_COUNT = int(os.getenv('CANDLE_COUNT', '500'))  # candles requested per session per tick
MAX_CANDLE_COUNT = int(os.getenv('MAX_CANDLE_COUNT', '5000'))  # OANDA hard limit per request
SYNTHETIC_VOLUME = int(os.getenv('SYNTHETIC_VOLUME', '1000'))  # volume used when the venue omits it
DATA_MAX_ATTEMPTS = int(os.getenv('DATA_MAX_ATTEMPTS', '3'))

# Brokerage I/O
OANDA_PRACTICE_URL = os.getenv('OANDA_PRACTICE_URL', 'https://api-fxpractice.oanda.com')
OANDA_LIVE_URL = os.getenv('OANDA_LIVE_URL', 'https://api-fxtrade.oanda.com')
HTTP_TIMEOUT_SECONDS = float(os.getenv('HTTP_TIMEOUT_SECONDS', '15'))
ORDER_MAX_ATTEMPTS = int(os.getenv('ORDER_MAX_ATTEMPTS', '4'))  # first try + 3 retries
RETRY_BASE_DELAY = float(os.getenv('RETRY_BASE_DELAY', '0.5'))
RETRY_MAX_DELAY = float(os.getenv('RETRY_MAX_DELAY', '8.0'))

# Connection supervision
RECONNECT_MAX_ATTEMPTS = int(os.getenv('RECONNECT_MAX_ATTEMPTS', '5'))  # consecutive failures before FAILED
RECONNECT_BASE_DELAY = float(os.getenv('RECONNECT_BASE_DELAY', '1.0'))
RECONNECT_MAX_DELAY = float(os.getenv('RECONNECT_MAX_DELAY', '30.0'))

# Strategy sandbox
SANDBOX_TIMEOUT_SECONDS = float(os.getenv('SANDBOX_TIMEOUT_SECONDS', '10'))
SANDBOX_MEMORY_LIMIT_MB = int(os.getenv('SANDBOX_MEMORY_LIMIT_MB', '512'))
SANDBOX_MAX_OUTPUT_BYTES = int(os.getenv('SANDBOX_MAX_OUTPUT_BYTES', '5000000'))  # cap on worker stdout

# Signals & sizing
MIN_SIGNAL_CONFIDENCE = float(os.getenv('MIN_SIGNAL_CONFIDENCE', '0.7'))  # only applied when strategy emits confidence
DEFAULT_ORDER_UNITS = int(os.getenv('DEFAULT_ORDER_UNITS', '1000'))

# Session defaults for newly started forward tests
DEFAULT_RISK_PER_TRADE = float(os.getenv('DEFAULT_RISK_PER_TRADE', '2.0'))  # percent of balance
DEFAULT_STOP_LOSS_PIPS = float(os.getenv('DEFAULT_STOP_LOSS_PIPS', '40'))
DEFAULT_TAKE_PROFIT_PIPS = float(os.getenv('DEFAULT_TAKE_PROFIT_PIPS', '80'))
DEFAULT_MAX_POSITION_SIZE = int(os.getenv('DEFAULT_MAX_POSITION_SIZE', '100000'))

# Storage
TRADING_DB_PATH = os.getenv('TRADING_DB_PATH', 'forward_testing.db')
