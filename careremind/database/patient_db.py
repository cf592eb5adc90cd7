from __future__ import annotations
import os
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, List

import pandas as pd
from filelock import FileLock

from ..models.patient import Patient
from ..utils.errors import StoreUnavailable, ValidationError
from ..utils.validation import sanitize_name, validate_patient_data

logger = logging.getLogger(__name__)

PATIENT_COLUMNS = [
    "patient_id",
    "first_name",
    "last_name",
    "dob",
    "phone",
    "email",
    "preferred_channel",
    "preferred_language",
    "created_at",
]


class PatientDB:
    """
    Patient records kept in a CSV file. The reminder core only reads from it;
    create_patient exists for the record store's own intake path.
    """

    def __init__(self, csv_path: str = "data/patients.csv"):
        self.csv_path = csv_path
        self.lock = FileLock(f"{csv_path}.lock", timeout=30)
        self._ensure_patients_csv()

    def _ensure_patients_csv(self):
        """If patients.csv not present, create an empty template with header."""
        try:
            directory = os.path.dirname(self.csv_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            if not os.path.exists(self.csv_path):
                pd.DataFrame(columns=PATIENT_COLUMNS).to_csv(self.csv_path, index=False)
        except OSError as e:
            raise StoreUnavailable(f"Cannot create patient store {self.csv_path}: {e}") from e

    def _read(self) -> pd.DataFrame:
        try:
            df = pd.read_csv(self.csv_path, dtype=str).fillna("")
        except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            logger.error(f"Error reading patients: {e}")
            raise StoreUnavailable(f"Cannot read patient store: {e}") from e
        for column in PATIENT_COLUMNS:
            if column not in df.columns:
                df[column] = ""
        return df

    @staticmethod
    def _to_patient(row: Dict) -> Patient:
        return Patient(
            patient_id=row["patient_id"],
            first_name=row.get("first_name", ""),
            last_name=row.get("last_name", ""),
            dob=row.get("dob") or None,
            phone=row.get("phone") or None,
            email=row.get("email") or None,
            preferred_channel=row.get("preferred_channel") or "sms",
            preferred_language=row.get("preferred_language") or "en",
            created_at=row.get("created_at") or None,
        )

    def list_patients(self) -> List[Patient]:
        """Return all patients from patients.csv"""
        df = self._read()
        return [self._to_patient(r) for r in df.to_dict(orient="records")]

    def get_patient_by_id(self, patient_id: str) -> Optional[Patient]:
        """Return patient by patient_id, or None if not found."""
        df = self._read()
        sel = df[df["patient_id"] == patient_id]
        if sel.empty:
            return None
        return self._to_patient(sel.iloc[0].to_dict())

    def find_patient_by_name_dob(self, first_name: str, last_name: str, dob: str) -> Optional[Patient]:
        """
        Find patient by exact first/last/dob match.
        Matching is case-insensitive for names.
        """
        df = self._read()
        fn = str(first_name or "").strip().lower()
        ln = str(last_name or "").strip().lower()
        dob_s = str(dob or "").strip()
        matches = df[
            (df["first_name"].str.strip().str.lower() == fn)
            & (df["last_name"].str.strip().str.lower() == ln)
            & (df["dob"].str.strip() == dob_s)
        ]
        if not matches.empty:
            return self._to_patient(matches.iloc[0].to_dict())
        return None

    def create_patient(self, p: Dict) -> Patient:
        """
        Create a new patient and append to patients.csv.
        Returns the created patient (including generated patient_id)
        """
        result = validate_patient_data(p)
        if not result["valid"]:
            raise ValidationError(result["errors"], "Invalid patient data")
        with self.lock:
            df = self._read()
            # generate next patient id Pxxxx
            if not df.empty:
                nums = df["patient_id"].str.extract(r"P(\d+)")[0].dropna()
                next_num = int(nums.astype(int).max()) + 1 if not nums.empty else len(df) + 1
            else:
                next_num = 1
            patient = Patient(
                patient_id=p.get("patient_id") or f"P{next_num:04d}",
                first_name=sanitize_name(p.get("first_name", "")),
                last_name=sanitize_name(p.get("last_name", "")),
                dob=p.get("dob") or None,
                phone=p.get("phone") or None,
                email=p.get("email") or None,
                preferred_channel=p.get("preferred_channel") or "sms",
                preferred_language=p.get("preferred_language") or "en",
                created_at=datetime.now(tz=timezone.utc).isoformat(),
            )
            df = pd.concat([df, pd.DataFrame([patient.to_dict()])], ignore_index=True)
            try:
                df.to_csv(self.csv_path, index=False)
            except OSError as e:
                raise StoreUnavailable(f"Cannot write patient store: {e}") from e
        logger.info(f"Created patient {patient.patient_id}")
        return patient

    def count_patients(self) -> int:
        return len(self._read())
