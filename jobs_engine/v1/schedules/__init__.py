"""
Recurring schedules driven by cron expressions.
"""
