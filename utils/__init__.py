"""Shared helpers: networking, retries, logging"""
