import os
import django

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings.dev')
django.setup()

from channels.routing import ProtocolTypeRouter, URLRouter
from channels.security.websocket import AllowedHostsOriginValidator
from django.core.asgi import get_asgi_application

from chat.routing import websocket_urlpatterns as chat_ws
from calls.routing import websocket_urlpatterns as calls_ws

django_asgi_app = get_asgi_application()

# Sockets authenticate themselves with the JWT, see realtime.consumers
application = ProtocolTypeRouter({
    'http': django_asgi_app,
    'websocket': AllowedHostsOriginValidator(
        URLRouter(
            chat_ws + calls_ws
        )
    ),
})
