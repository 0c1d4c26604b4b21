"""Usage and connection-outcome accounting with a read-only stats API."""
