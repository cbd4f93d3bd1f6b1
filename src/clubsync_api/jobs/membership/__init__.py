"""Scheduled membership maintenance jobs."""
