"""Periodic re-run registration"""
