"""
Realty Sales Pipeline

Lead assignment stage tracking and sales analytics.
"""
