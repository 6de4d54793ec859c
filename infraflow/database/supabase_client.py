from supabase import create_client, Client
from infraflow.config import settings


class SupabaseClient:
    """Process-wide Supabase clients for the deployments store."""

    _service_client: Client = None

    @classmethod
    def get_service_client(cls) -> Client:
        """
        Client for the job workers: they write deployment records outside any
        user session, so the service_role key is preferred (bypasses RLS).
        """
        if cls._service_client is None:
            if not settings.supabase_url:
                raise RuntimeError(
                    "SUPABASE_URL is not configured; set PERSISTENCE_BACKEND=memory for local runs"
                )
            key = settings.supabase_service_role_key or settings.supabase_key
            cls._service_client = create_client(settings.supabase_url, key)
        return cls._service_client

    @classmethod
    def reset_client(cls):
        cls._service_client = None
