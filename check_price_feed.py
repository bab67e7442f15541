from dotenv import load_dotenv

load_dotenv()

import os
import sys

from entryguard.core.errors import TransientFetchError
from entryguard.exchange.price_gateway import BinancePriceGateway

base = os.getenv("BINANCE_API_BASE_URL", "https://api.binance.com").strip()
timeout = float(os.getenv("PRICE_FETCH_TIMEOUT_SECONDS", "5").strip())
symbols = sys.argv[1:] or ["BTCUSDT"]

gw = BinancePriceGateway(base_url=base, timeout_s=timeout, max_retries=0)

failed = 0
for sym in symbols:
    try:
        q = gw.get_price("BINANCE", sym)
    except TransientFetchError as e:
        failed += 1
        print(f"{sym}: FAILED {e}")
        continue
    print(f"{sym}: {'no data' if q is None else q.last}")

if failed:
    raise SystemExit(1)
