"""
Apps package - services for the delivery platform.

This package contains the service applications:
- delivery_dispatch: Order-to-courier dispatch against DoorDash Drive
"""
