"""calsync: keeps tasks and schedule blocks in step with linked external calendars."""
