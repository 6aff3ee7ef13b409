"""Test suite for the tiered billing record store."""
