"""
Services for alias resolution, click/visit tracking and event fan-out.

Resolution (redirect_service, link_lookup) is the request path; everything
else runs after the response, from background_tasks.
"""
