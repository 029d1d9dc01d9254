"""Ledgerly - OTP authentication and session API."""
