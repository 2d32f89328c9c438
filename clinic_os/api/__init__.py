"""HTTP API for ClinicOS."""
