"""
Payments app for escrow contracts, settlement and subscription billing.

This app handles:
- Escrow contracts with staged payments (deposit, optional middle, final)
- Gateway webhooks that fund escrow once a payment is confirmed
- Disputes, refunds and release of frozen funds
- Daily settlement of released funds into bank payouts
- Recurring subscription renewals with retry and suspension

Usage:
    from payments.services import EscrowService

    # Create contract
    result = EscrowService.create_contract(payer, payee=guide, title="Tour", total_amount=100000)

    # Settle released funds
    from payments.services import SettlementService

    summary = SettlementService.run_settlement_batch()
"""
