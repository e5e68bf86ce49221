"""
Purchase Order Intake Pipeline
"""

__version__ = "1.0.0"
__description__ = "Email-to-ERP purchase order processing pipeline"
