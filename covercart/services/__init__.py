"""
Domain services.

- razorpay_service / shiprocket_service: provider clients (httpx)
- order_store: persistence for orders, custom orders and shipments
- reconciliation: payment and carrier event state machine
- fulfillment: shipment creation, courier assignment, pickup, documents
"""
