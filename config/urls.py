from django.conf import settings
from django.conf.urls.static import static
from django.urls import path

from taskboard.api import api

urlpatterns = [
    path("api/", api.urls),
]

# Verification photos saved by the storage fallback; served by the web server outside DEBUG
urlpatterns += static(settings.MEDIA_URL, document_root=settings.MEDIA_ROOT)
