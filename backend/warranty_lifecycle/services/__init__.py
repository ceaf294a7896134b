"""Warranty Lifecycle Engine - Services"""
