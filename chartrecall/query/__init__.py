"""
ChartRecall Query Module

Entity extraction, classification, identifier resolution, retrieval
strategy selection and answer assembly.
"""
