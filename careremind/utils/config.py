import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Configuration management"""
    
    # Storage
    DATA_DIR = os.getenv("DATA_DIR", "data")
    DB_PATH = os.getenv("DB_PATH", os.path.join(DATA_DIR, "appointments.db"))
    PATIENTS_CSV = os.getenv("PATIENTS_CSV", os.path.join(DATA_DIR, "patients.csv"))
    LOCKS_PATH = os.getenv("LOCKS_PATH", os.path.join(DATA_DIR, "locks"))
    
    # Clinic details used in reminder content
    CLINIC_NAME = os.getenv("CLINIC_NAME", "CareRemind Medical Center")
    CLINIC_PHONE = os.getenv("CLINIC_PHONE", "(555) 123-4567")
    CLINIC_ADDRESS = os.getenv("CLINIC_ADDRESS", "123 Healthcare Ave, Medical City, MC 12345")
    CLINIC_TIMEZONE = os.getenv("CLINIC_TIMEZONE", "Asia/Kolkata")
    
    # Email Configuration
    EMAIL_HOST = os.getenv("EMAIL_HOST", "smtp.gmail.com")
    EMAIL_PORT = int(os.getenv("EMAIL_PORT", "587"))
    EMAIL_USER = os.getenv("EMAIL_USER")
    EMAIL_PASSWORD = os.getenv("EMAIL_PASSWORD")
    FROM_EMAIL = os.getenv("FROM_EMAIL", EMAIL_USER)
    
    # SMS / WhatsApp (Twilio)
    TWILIO_SID = os.getenv("TWILIO_SID")
    TWILIO_TOKEN = os.getenv("TWILIO_TOKEN")
    TWILIO_PHONE = os.getenv("TWILIO_PHONE")
    TWILIO_WHATSAPP = os.getenv("TWILIO_WHATSAPP")
    
    # Reminder processing
    REMINDER_BATCH_SIZE = int(os.getenv("REMINDER_BATCH_SIZE", "50"))
    LOCK_TIMEOUT = float(os.getenv("LOCK_TIMEOUT", "30"))
    RESCHEDULE_ANCHOR = os.getenv("RESCHEDULE_ANCHOR", "new")  # new, original
    
    # File Paths
    EXPORTS_PATH = os.getenv("EXPORTS_PATH", "exports")
    LOGS_PATH = os.getenv("LOGS_PATH", "logs")
    
    @classmethod
    def email_configured(cls) -> bool:
        return bool(cls.EMAIL_USER and cls.EMAIL_PASSWORD)
    
    @classmethod
    def twilio_configured(cls) -> bool:
        return bool(cls.TWILIO_SID and cls.TWILIO_TOKEN)
    
    @classmethod
    def validate_config(cls) -> bool:
        """Validate configuration; providers without credentials run in simulation mode"""
        missing = []
        if not cls.email_configured():
            missing.append("EMAIL_USER/EMAIL_PASSWORD")
        if not cls.twilio_configured():
            missing.append("TWILIO_SID/TWILIO_TOKEN")
        
        if cls.RESCHEDULE_ANCHOR not in ("new", "original"):
            return False
        
        if missing:
            print(f"Notification providers not configured, sends will be simulated: {', '.join(missing)}")
        
        return True

# Global config instance
config = Config()
