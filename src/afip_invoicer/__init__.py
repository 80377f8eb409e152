"""
afip_invoicer — electronic invoice issuing against the AFIP/ARCA gateway.

Signs WSAA login tickets, caches the short-lived session credentials,
sequences voucher numbers from WSFE, validates the receiver's VAT condition
and requests the CAE for each invoice.
"""

__version__ = "0.1.0"
