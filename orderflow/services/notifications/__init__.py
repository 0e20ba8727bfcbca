"""Notification planning, persistence and live delivery."""
