"""Admissions Workflow - document verification and stage transition service"""
