"""Claimgate - Data Models"""
