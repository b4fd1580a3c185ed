"""
SaaS API connectors.
"""

from dataplane.connectors.api.rest import RestAPIConnector
from dataplane.connectors.api.salesforce import SalesforceConnector
from dataplane.connectors.api.spendesk import SpendeskConnector
from dataplane.connectors.api.xero import XeroConnector

__all__ = ["RestAPIConnector", "SalesforceConnector", "SpendeskConnector", "XeroConnector"]
