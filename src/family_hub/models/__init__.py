"""Document and request models for Family Hub."""
