"""Human-readable student codes: STU + enrollment year/month + 3 random digits."""

import random
from datetime import datetime


def generate_student_id(now: datetime, rng: random.Random | None = None) -> str:
    rng = rng or random.SystemRandom()
    suffix = rng.randrange(1000)
    return f"STU{now.year}{now.month:02d}{suffix:03d}"
