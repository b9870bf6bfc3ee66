"""System package handlers."""
