from typing import Optional

from pydantic import BaseModel


class Config(BaseModel):
    circle_database_url: Optional[str] = None
    circle_reminder_interval_minutes: int = 60
    circle_reminder_hour: Optional[int] = 10
    circle_reminder_window_day: int = 25
    circle_allocation_max_attempts: int = 3
