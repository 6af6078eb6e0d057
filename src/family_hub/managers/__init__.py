"""Workflow managers for Family Hub."""
