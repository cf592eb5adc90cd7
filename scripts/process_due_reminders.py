# scripts/process_due_reminders.py
"""
Send every scheduled reminder whose time has come.
Usage:
  python -m scripts.process_due_reminders
  python -m scripts.process_due_reminders --limit 20 --loop --interval 60
"""
import time
import logging
import argparse
from dotenv import load_dotenv

from careremind.agents.flow import build_clinic_flow
from careremind.utils.config import config

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main():
    p = argparse.ArgumentParser()
    p.add_argument("--data_dir", required=False)
    p.add_argument("--limit", type=int, default=config.REMINDER_BATCH_SIZE)
    p.add_argument("--loop", action="store_true", help="keep sweeping until interrupted")
    p.add_argument("--interval", type=int, default=60, help="seconds between sweeps with --loop")
    args = p.parse_args()

    config.validate_config()
    flow = build_clinic_flow(args.data_dir)

    while True:
        summary = flow.process_due_reminders(args.limit)
        print(f"sent={summary['sent']} failed={summary['failed']} "
              f"cancelled={summary['cancelled']} skipped={summary['skipped']}")
        if not args.loop:
            break
        try:
            time.sleep(args.interval)
        except KeyboardInterrupt:
            logger.info("Stopping reminder sweep")
            break


if __name__ == "__main__":
    main()
