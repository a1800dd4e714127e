"""Application migrations for the leasing database.

Each ``v<NNN>_<slug>.py`` module in this package is one migration. Add a new
one with the next free number; never edit a migration that has shipped, since
the runner reports modified migrations as drifted.
"""
