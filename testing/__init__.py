"""Testing utilities and fixtures."""
