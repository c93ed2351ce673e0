"""Recruitment integrity engine: coupons, biometric deduplication, RDS seed selection."""
