# scripts/ensure_tables.py
"""
Create the appointment, template and reminder tables and seed default templates.
Usage:
  python -m scripts.ensure_tables
  python -m scripts.ensure_tables --db data/appointments.db --no-seed
"""
import argparse
import logging
from dotenv import load_dotenv

from careremind.database.appointment_db import AppointmentDB
from careremind.database.patient_db import PatientDB
from careremind.database.reminder_db import ReminderDB
from careremind.database.template_db import TemplateDB
from careremind.utils.config import config

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


def main():
    p = argparse.ArgumentParser()
    p.add_argument("--db", default=config.DB_PATH)
    p.add_argument("--patients", default=config.PATIENTS_CSV)
    p.add_argument("--no-seed", action="store_true")
    args = p.parse_args()

    # each store creates its own tables on construction
    AppointmentDB(args.db)
    ReminderDB(args.db)
    PatientDB(args.patients)
    templates = TemplateDB(args.db)
    print(f"Tables ready in {args.db}; patient store at {args.patients}")

    if not args.no_seed:
        created = templates.seed_default_templates()
        print(f"Seeded {created} default template(s)")


if __name__ == "__main__":
    main()
