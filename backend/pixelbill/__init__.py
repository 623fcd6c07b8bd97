"""PixelBill backend: subscription state synchronization between Stripe, Clerk and the local store"""
__version__ = "1.0.0"
