# ==== SERVICES PACKAGE ==== #

"""
Services package for document numbering and billing logic.

This package contains the sequence allocator and its series locks, the
billing resolver for fees and monthly charges, warehouse space maths,
the policy loader and month-end proforma generation.
"""
