"""leasing-schema - versioned, reversible schema migrations for the leasing database."""

__version__ = "0.1.0"
