"""Allure reporting helpers for visual validation."""
