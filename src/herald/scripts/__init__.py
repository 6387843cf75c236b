"""Operational entry points (cron jobs, migrations, one-off delivery passes)."""
