#!/usr/bin/env python3
"""Escrow room server with background timeout and deposit sweeps.

Settlement mode from ESCROW_SIMULATED; the RPC gateway needs ESCROW_GATEWAY_URL.
"""

import os, sys, time, threading, logging
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn
from server.app import create_app
from server.store import RoomStore
from protocol import NETWORK, SIMULATED_SETTLEMENT, GATEWAY_URL

DB_PATH = os.environ.get("ESCROW_DB", "/var/lib/escrow/escrow.db")
PORT = int(os.environ.get("ESCROW_PORT", "8000"))
SWEEP_INTERVAL = int(os.environ.get("ESCROW_SWEEP_INTERVAL", "60"))
WARNING_INTERVAL = int(os.environ.get("ESCROW_WARNING_INTERVAL", "120"))
DEPOSIT_POLL_INTERVAL = int(os.environ.get("ESCROW_DEPOSIT_POLL_INTERVAL", "15"))

if not SIMULATED_SETTLEMENT and not GATEWAY_URL:
    print("ESCROW_GATEWAY_URL env var required when ESCROW_SIMULATED=0", file=sys.stderr)
    sys.exit(1)


def run_periodic(name, interval, job):
    """Background thread: run job every interval seconds, report what it did."""
    while True:
        time.sleep(interval)
        try:
            report = job()
            if any(report.get(k) for k in ("expired", "sent", "funded")):
                print(f"[{name}] {report}")
            for err in report.get("errors", []):
                print(f"[{name}] {err}", file=sys.stderr)
        except Exception as e:
            print(f"[{name}] Error: {e}", file=sys.stderr)


# --- Main ---
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
os.makedirs(os.path.dirname(DB_PATH), exist_ok=True)

store = RoomStore(DB_PATH)
app = create_app(store=store)
sweeper = app.state.sweeper
engine = app.state.engine

jobs = [
    ("timeouts", SWEEP_INTERVAL, lambda: sweeper.sweep().to_dict()),
    ("warnings", WARNING_INTERVAL, lambda: sweeper.send_warnings().to_dict()),
    ("deposits", DEPOSIT_POLL_INTERVAL, engine.deposits.poll_open_deposits),
]
for name, interval, job in jobs:
    threading.Thread(target=run_periodic, args=(name, interval, job), daemon=True).start()

print(f"[server] Network: {NETWORK} ({'simulated' if SIMULATED_SETTLEMENT else 'rpc'} settlement)")
print(f"[server] Timeout sweep every {SWEEP_INTERVAL}s, warnings every {WARNING_INTERVAL}s")
print(f"[server] Deposit polling every {DEPOSIT_POLL_INTERVAL}s")
print(f"[server] Listening on :{PORT}")

uvicorn.run(app, host="0.0.0.0", port=PORT)
