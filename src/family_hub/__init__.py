"""Family Hub: household graph, merge and invitation workflows, notifications and sharing."""

__version__ = "1.0.0"
