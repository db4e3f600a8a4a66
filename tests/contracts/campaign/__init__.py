# Campaign Engine Contracts

"""
Campaign Engine Contract Module

This module contains:
- data_contract.py: re-exported engine models and the test data factory
"""
