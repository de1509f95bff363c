"""Date manipulation utilities"""

from datetime import date


def age_on(birth_date: date, reference: date) -> int:
    """Full years between birth_date and reference, adjusted for month/day"""
    age = reference.year - birth_date.year
    if (reference.month, reference.day) < (birth_date.month, birth_date.day):
        age -= 1
    return age


def membership_years(first_membership: date, reference: date) -> int:
    """Calendar-year difference, without month/day adjustment"""
    return reference.year - first_membership.year
