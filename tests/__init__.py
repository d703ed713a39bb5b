"""Tests for pomodoro-jam."""
