"""
Cache-Control presets applied as route dependencies.

Usage:
    @router.get("/faktury", dependencies=[Depends(short_cache)])
"""

from fastapi import Response


def cache_control(
    max_age: int | None = None,
    stale_while_revalidate: int | None = None,
    private: bool = True,
    no_store: bool = False
):
    """Build a dependency that sets the Cache-Control header."""
    if no_store:
        header = "no-store"
    else:
        directives = ["private" if private else "public"]
        if max_age is not None:
            directives.append(f"max-age={max_age}")
        if stale_while_revalidate is not None:
            directives.append(f"stale-while-revalidate={stale_while_revalidate}")
        header = ", ".join(directives)

    def dependency(response: Response) -> None:
        response.headers["Cache-Control"] = header

    return dependency


# Frequently changing data (email list)
short_cache = cache_control(max_age=60, stale_while_revalidate=30)

# Attachment metadata
medium_cache = cache_control(max_age=300, stale_while_revalidate=60)

# PDF bytes and extracted data
long_cache = cache_control(max_age=3600, stale_while_revalidate=300)

# Auth, sync and job status
no_cache = cache_control(no_store=True)
