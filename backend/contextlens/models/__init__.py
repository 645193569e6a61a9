from .base import Base
from .session_record import SessionRecord, UserPreference
