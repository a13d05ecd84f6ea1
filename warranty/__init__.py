"""SmartSeller warranty backend: barcode issuance, activation, claims and repairs."""
