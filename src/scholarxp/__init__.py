"""ScholarXP consensus core - reviewer reliability, weighted peer consensus
and community vote resolution for XP rewards."""

__version__ = "0.4.0"
