"""Test suite for gitlab-ado-migrate."""
