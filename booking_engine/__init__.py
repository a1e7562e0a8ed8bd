"""Appointment lifecycle and resilience engine for the therapy booking agent."""
