"""Admissions Workflow - Services"""
