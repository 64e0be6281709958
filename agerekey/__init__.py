"""Rekey master-encrypted age secrets for hosts and generate missing ones."""
