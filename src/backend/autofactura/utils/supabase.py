from supabase import create_client, Client
from autofactura.config import settings

def get_supabase_client() -> Client:
    """
    Create and return a Supabase client instance.
    Uses the service role key: pattern stats and learned patterns are
    written by the backend, never by end users.
    """
    supabase: Client = create_client(
        settings.SUPABASE_URL,
        settings.SUPABASE_SERVICE_KEY
    )
    return supabase
