"""Data models - submissions, reliability, consensus results and votes."""
