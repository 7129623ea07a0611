import argparse
import time
import schedule
import logging
import sys
from config.app_config import SWEEP_INTERVAL_MINUTES
from database.config import SessionLocal
from services.ledger_service import LedgerService
from services.settings_service import SettingsHolder
from services.timeout_sweeper import run_sweep

# Configure Logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler("sweep_worker.log")
    ]
)

# The worker has no sockets: its outbox rows are emitted by the API's redelivery pass
settings = SettingsHolder()


def run_sweep_cycle():
    logging.info("Starting Idle Sweep Cycle...")
    try:
        stats = run_sweep(SessionLocal, settings)
        logging.info(f"Cycle Complete. {stats}")
    except Exception:
        logging.exception("Error in sweep cycle")


def run_reconcile():
    """Ledger conservation check; exits non-zero when wallets and deposits disagree."""
    db = SessionLocal()
    try:
        total = LedgerService(db, settings).check_conservation()
        logging.info(f"Ledger balanced: {total} minor units")
    finally:
        db.close()


def start_scheduler():
    logging.info(f"Starting Idle Sweep Scheduler (Every {SWEEP_INTERVAL_MINUTES} Minutes)...")
    # Run once immediately
    run_sweep_cycle()

    schedule.every(SWEEP_INTERVAL_MINUTES).minutes.do(run_sweep_cycle)

    while True:
        schedule.run_pending()
        time.sleep(30)


def main():
    parser = argparse.ArgumentParser(description="Influence Chat Sweep Worker")
    parser.add_argument("--mode", choices=["once", "schedule", "reconcile"], default="schedule", help="Run once, schedule, or check the ledger")
    args = parser.parse_args()

    if args.mode == "schedule":
        start_scheduler()
    elif args.mode == "reconcile":
        run_reconcile()
    else:
        run_sweep_cycle()


if __name__ == "__main__":
    main()
