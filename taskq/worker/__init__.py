"""
Worker module.
Contains the scheduler loop, handler registry, queue selection and retry policy.
"""
