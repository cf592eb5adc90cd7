# scripts/export_reminders.py
"""
Export the reminder ledger to Excel and print ledger counts.
Usage:
  python -m scripts.export_reminders
  python -m scripts.export_reminders --appointment_id A1b2c3d4e
"""
import json
import argparse
import logging
from dotenv import load_dotenv

from careremind.agents.flow import build_clinic_flow

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


def main():
    p = argparse.ArgumentParser()
    p.add_argument("--data_dir", required=False)
    p.add_argument("--appointment_id", required=False)
    p.add_argument("--stats_only", action="store_true")
    args = p.parse_args()

    flow = build_clinic_flow(args.data_dir, seed_templates=False)
    print(json.dumps(flow.reminder_stats(), indent=2))
    if args.stats_only:
        return

    path = flow.export_reminder_ledger(args.appointment_id)
    if path:
        print(f"Reminder ledger exported to {path}")
    else:
        print("No reminder data to export.")


if __name__ == "__main__":
    main()
