"""
Registre central des routers.
- Commandes: /orders (création, lecture, statut) + paiement KHQR (/orders/{id}/payment-*)
- Webhook passerelle: /payments/webhook (sans rate limit client)
- Auth, Admin, Health
La classe de rate limit "general" s'applique à tous les routers sauf le webhook et le health.
"""
from fastapi import Depends, FastAPI
from shopease.orders import views as orders_views
from shopease.payments import views as payments_views
from shopease.auth.views import router as auth_router
from shopease.admin.views import router as admin_router
from shopease.health.router import router as health_router
from shopease.utils.rate_limit import rate_limit

def register_routers(app: FastAPI) -> None:
    general = [Depends(rate_limit("general"))]
    # Paiements avant commandes: chemins plus spécifiques d'abord
    app.include_router(payments_views.orders_router, dependencies=general)
    app.include_router(orders_views.router, dependencies=general)
    app.include_router(auth_router, dependencies=general)
    app.include_router(admin_router, dependencies=general)
    # Gateway-initiated: authentifié par signature, pas par client
    app.include_router(payments_views.router)
    app.include_router(health_router)
