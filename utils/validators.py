import re
from datetime import date
from typing import Dict, List, Optional

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError

_EMAIL = TypeAdapter(EmailStr)
_PHONE_RE = re.compile(r"^\+?[0-9 ()\-]{3,20}$")


class TextValidator:
    """Basic text checks and sanitization for names, titles and labels."""

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        # strip HTML tags and surrounding whitespace
        cleaned = re.sub(r"<[^>]*>", "", text)
        return cleaned.strip()

    @staticmethod
    def is_present(text: Optional[str], max_length: int = 255) -> bool:
        if text is None:
            return False
        t = text.strip()
        return bool(t) and len(t) <= max_length


class EmailValidator:
    @staticmethod
    def normalize(raw: Optional[str]) -> str:
        return (raw or "").strip().lower()

    @staticmethod
    def is_valid_email(email: Optional[str]) -> bool:
        if not email or len(email) > 255:
            return False
        try:
            _EMAIL.validate_python(email)
        except PydanticValidationError:
            return False
        return True


class PhoneValidator:
    @staticmethod
    def is_valid_phone(phone: Optional[str]) -> bool:
        if not phone:
            return False
        return bool(_PHONE_RE.match(phone.strip()))


class DateValidator:
    @staticmethod
    def parse(value) -> Optional[date]:
        """Accept a date or an ISO ``YYYY-MM-DD`` string; None when unparseable."""
        if isinstance(value, date):
            return value
        if not value:
            return None
        try:
            return date.fromisoformat(str(value).strip()[:10])
        except ValueError:
            return None


class FieldErrors:
    """Collects field-level messages and raises them together as a ValidationError."""

    def __init__(self) -> None:
        self.errors: Dict[str, List[str]] = {}

    def add(self, field: str, message: str) -> None:
        self.errors.setdefault(field, []).append(message)

    def text(self, field: str, value: Optional[str], max_length: int = 255, required: bool = True) -> Optional[str]:
        if value is None and not required:
            return None
        cleaned = TextValidator.sanitize_text(value)
        if not cleaned:
            self.add(field, f"The {field} field is required.")
        elif len(cleaned) > max_length:
            self.add(field, f"The {field} may not be greater than {max_length} characters.")
        return cleaned

    def email(self, field: str, value: Optional[str], required: bool = True) -> Optional[str]:
        if value is None and not required:
            return None
        email = EmailValidator.normalize(value)
        if not EmailValidator.is_valid_email(email):
            self.add(field, f"The {field} must be a valid email address.")
        return email

    def phone(self, field: str, value: Optional[str], required: bool = True) -> Optional[str]:
        if value is None and not required:
            return None
        if not PhoneValidator.is_valid_phone(value):
            self.add(field, f"The {field} must be a valid phone number of at most 20 characters.")
            return value
        return value.strip()

    def integer_range(self, field: str, value: Optional[int], minimum: Optional[int] = None,
                      maximum: Optional[int] = None, required: bool = True) -> Optional[int]:
        if value is None:
            if required:
                self.add(field, f"The {field} field is required.")
            return None
        if minimum is not None and value < minimum:
            self.add(field, f"The {field} must be at least {minimum}.")
        if maximum is not None and value > maximum:
            self.add(field, f"The {field} may not be greater than {maximum}.")
        return value

    def date_not_before(self, field: str, value, earliest: date) -> Optional[date]:
        parsed = DateValidator.parse(value)
        if value is None or value == "":
            self.add(field, f"The {field} field is required.")
        elif parsed is None:
            self.add(field, f"The {field} is not a valid date.")
        elif parsed < earliest:
            self.add(field, f"The {field} must be a date after or equal to {earliest.isoformat()}.")
        return parsed

    def raise_if_any(self) -> None:
        if self.errors:
            raise ValidationError(self.errors)
