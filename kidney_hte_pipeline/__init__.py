"""Kidney-marker heterogeneity of intensive glycemic control treatment effects."""
