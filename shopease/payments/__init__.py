"""
Module 'payments' (feature-first): paiement Bakong KHQR.
Réunit l'encodage KHQR, le client passerelle, le repository des sessions et le résolveur idempotent.
"""
