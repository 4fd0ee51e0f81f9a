"""Dispatcher services: messaging provider, templates, scheduler and job runner."""
