"""core/ -- Configuration and error taxonomy shared by every layer."""
