import re
from datetime import datetime
from typing import Optional, Dict, Any

from .date_utils import combine_date_time

def validate_email(email: str) -> bool:
    """Validate email format"""
    if not email:
        return False
    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return bool(re.match(pattern, email.strip()))

def validate_phone(phone: str) -> bool:
    """Validate phone number format"""
    if not phone:
        return False
    # Remove spaces, dashes, parentheses
    clean_phone = re.sub(r'[\s\-\(\)\.]', '', phone)
    # International numbers: optional +, 8 to 15 digits
    pattern = r'^\+?[1-9]\d{7,14}$'
    return bool(re.match(pattern, clean_phone))

def validate_recipient(channel: str, address: Optional[str]) -> bool:
    """Check a recipient address is usable for the channel"""
    if not address or not str(address).strip():
        return False
    if channel == "email":
        return validate_email(address)
    if channel in ("sms", "whatsapp"):
        return validate_phone(str(address).replace("whatsapp:", ""))
    return False

def validate_dob(dob: str) -> bool:
    """Validate date of birth"""
    try:
        birth_date = datetime.strptime(dob, '%Y-%m-%d')
        today = datetime.now()
        
        # Should be in the past
        if birth_date.date() >= today.date():
            return False
        
        # Reasonable age limits (0-120 years)
        age = (today - birth_date).days / 365.25
        return 0 <= age <= 120
    except (TypeError, ValueError):
        return False

def validate_date_format(date_str: str) -> bool:
    try:
        datetime.strptime(str(date_str), '%Y-%m-%d')
        return True
    except ValueError:
        return False

def validate_time_format(time_str: str) -> bool:
    for fmt in ('%H:%M', '%H:%M:%S'):
        try:
            datetime.strptime(str(time_str).strip(), fmt)
            return True
        except ValueError:
            continue
    return False

def sanitize_name(name: str) -> str:
    """Sanitize and format name"""
    if not name:
        return ""
    
    # Remove extra spaces and capitalize properly
    return ' '.join(word.capitalize() for word in name.strip().split())

def sanitize_phone(phone: str) -> str:
    """Sanitize phone number to +digits"""
    if not phone:
        return ""
    
    # Remove all non-digits except +
    clean = re.sub(r'[^\d\+]', '', phone)
    if clean and not clean.startswith('+'):
        clean = '+' + clean
    
    return clean

def validate_patient_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """Validate complete patient data"""
    errors = {}
    warnings = []
    
    # Required fields
    if not data.get('first_name'):
        errors['first_name'] = "First name is required"
    
    if not data.get('last_name'):
        errors['last_name'] = "Last name is required"
    
    if data.get('dob') and not validate_dob(data['dob']):
        errors['dob'] = "Invalid date of birth"
    
    # Contact channels
    if data.get('email') and not validate_email(data['email']):
        errors['email'] = "Invalid email format"
    
    if data.get('phone') and not validate_phone(data['phone']):
        warnings.append("Phone number format may be incorrect")
    
    if data.get('preferred_channel') and data['preferred_channel'] not in ('email', 'sms', 'whatsapp'):
        errors['preferred_channel'] = "Preferred channel must be email, sms or whatsapp"
    
    return {
        'valid': len(errors) == 0,
        'errors': errors,
        'warnings': warnings
    }

def validate_appointment_data(data: Dict[str, Any], now: datetime, valid_types: Optional[list] = None) -> Dict[str, Any]:
    """Validate appointment data; date/time must not precede now"""
    errors = {}
    warnings = []
    
    # Required fields
    if not data.get('patient_id'):
        errors['patient_id'] = "Patient is required"
    
    if not data.get('date'):
        errors['date'] = "Appointment date is required"
    elif not validate_date_format(data['date']):
        errors['date'] = "Date must be in YYYY-MM-DD format"
    
    if not data.get('time'):
        errors['time'] = "Appointment time is required"
    elif not validate_time_format(data['time']):
        errors['time'] = "Time must be in HH:MM format"
    
    if not data.get('appointment_type'):
        errors['appointment_type'] = "Appointment type is required"
    elif valid_types and data['appointment_type'] not in valid_types:
        warnings.append("Unusual appointment type")
    
    # Date/time must not be in the past
    if 'date' not in errors and 'time' not in errors:
        start = combine_date_time(data['date'], data['time'])
        if start < now:
            errors['date'] = "Appointment date and time cannot be in the past"
    
    # Duration validation
    duration = data.get('duration_minutes', 30)
    try:
        if int(duration) <= 0:
            errors['duration_minutes'] = "Duration must be positive"
        elif int(duration) not in [15, 30, 45, 60]:
            warnings.append("Unusual appointment duration")
    except (TypeError, ValueError):
        errors['duration_minutes'] = "Duration must be a number of minutes"
    
    return {
        'valid': len(errors) == 0,
        'errors': errors,
        'warnings': warnings
    }
