"""Utility modules for Family Hub."""
