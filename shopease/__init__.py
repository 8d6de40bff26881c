"""ShopEase: backend de commandes (stock, prix serveur, paiement Bakong KHQR)."""
