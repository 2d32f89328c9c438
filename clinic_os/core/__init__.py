"""Booking store persistence for ClinicOS."""
