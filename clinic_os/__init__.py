"""ClinicOS: recurring-appointment scheduling core for multi-discipline clinics."""

__version__ = "0.1.0"
