"""Best-effort client IP and country from request headers.

None of these headers are signed. Behind a trusted edge (Cloudflare, Vercel,
CloudFront) they are set by the edge; anywhere else a client can forge them, so
the bonus gates built on them are a deterrent, not a guarantee.

Usage in a login handler:
    from src.cr_gateway.request_context import get_login_risk_context

    @router.post("/session")
    async def login(ctx: LoginRiskContext = Depends(get_login_risk_context)):
        ...
"""

from starlette.requests import Request

from src.cr_bonus.domain.policy import LoginRiskContext, normalize_country, normalize_ip

# Checked in order; the first non-empty header wins
_COUNTRY_HEADERS = (
    "cf-ipcountry",
    "x-vercel-ip-country",
    "cloudfront-viewer-country",
    "x-country-code",
)


def get_client_ip(request: Request) -> str:
    """cf-connecting-ip, then x-real-ip, then the first hop of x-forwarded-for."""
    cf_ip = request.headers.get("cf-connecting-ip", "").strip()
    if cf_ip:
        return cf_ip

    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip

    # x-forwarded-for: "client, proxy1, proxy2"
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()

    return ""


def get_country(request: Request) -> str:
    for header in _COUNTRY_HEADERS:
        value = request.headers.get(header, "")
        if value:
            return value.strip().upper()
    return ""


async def get_login_risk_context(request: Request) -> LoginRiskContext:
    """FastAPI dependency: risk context for the current login.

    The signup IP is the one recorded at registration; when the host app stored
    it on request.state it is used, otherwise the login IP stands in for it.
    """
    claim_ip = normalize_ip(get_client_ip(request))
    signup_ip = normalize_ip(getattr(request.state, "signup_ip", "") or claim_ip)
    return LoginRiskContext(
        signup_ip=signup_ip,
        claim_ip=claim_ip,
        country=normalize_country(get_country(request)),
    )
