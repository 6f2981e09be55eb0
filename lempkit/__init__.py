"""
lempkit
-------
Provisioning and maintenance toolkit for a single-host LEMP, mail and
WordPress server.
"""

APP_NAME: str = "LEMP Kit"
VERSION: str = "1.0.0"
