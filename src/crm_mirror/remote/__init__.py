"""Remote CRM service clients.

RemoteServiceClient is the interface consumed by the engines; ZohoClient
implements it over the Zoho CRM REST API.
"""
