"""Configuration, logging setup and the error taxonomy shared by every layer."""
