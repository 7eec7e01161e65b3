"""
                Restaurant Aggregator Gateway

Backend that ingests Swiggy/Zomato order webhooks into the restaurant's
order and kitchen pipeline and reports status changes back to the platforms.

Author: Khalil_Bannouri
Version: 4.0.0
License: MIT
"""

__version__ = "4.0.0"
__author__ = "Khalil_Bannouri"
