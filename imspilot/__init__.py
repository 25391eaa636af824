"""Automated completion of online-course activities with AI-answered exams."""

__version__ = "0.1.0"
