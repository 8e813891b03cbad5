"""
ChartRecall Core Module

Domain types, the error taxonomy and the upstream call boundary.
"""
