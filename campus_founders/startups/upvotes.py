"""
Optimistic upvote toggling.

Whether the user has upvoted is always read from the startup's current
``upvotes`` list (string-normalised ids), never from a flag the caller
passes in, so rapid repeated toggles cannot compound a wrong guess.
"""
from campus_founders.core.normalizers import clamp_decrement, contains_id, remove_id, same_id


def has_upvoted(startup, user_id):
    if not startup or not user_id:
        return False
    return contains_id(startup.get('upvotes') or [], user_id)


def upvote_count(startup):
    count = startup.get('upvoteCount')
    if count is None:
        return len(startup.get('upvotes') or [])
    return count


def toggle_startup_upvote(startup, user_id):
    """Copy of ``startup`` with the user's upvote flipped and the count kept in step"""
    upvotes = list(startup.get('upvotes') or [])
    count = upvote_count(startup)
    if contains_id(upvotes, user_id):
        upvotes = remove_id(upvotes, user_id)
        count = clamp_decrement(count)
    else:
        upvotes.append(str(user_id))
        count += 1
    return {**startup, 'upvotes': upvotes, 'upvoteCount': count}


def toggle_in_detail(response, startup_id, user_id):
    """Detail payload: ``{"startup": {...}, "reviews": [...], "stats": {...}}``"""
    if not response or not response.get('startup'):
        return response
    if not same_id(response['startup'], startup_id):
        return response
    return {**response, 'startup': toggle_startup_upvote(response['startup'], user_id)}


def _toggle_in_startups(startups, startup_id, user_id):
    return [
        toggle_startup_upvote(startup, user_id) if same_id(startup, startup_id) else startup
        for startup in startups
    ]


def toggle_in_list(startups, startup_id, user_id):
    """List payload: a plain list, or ``{"results": [...]}`` for AI search"""
    if isinstance(startups, list):
        return _toggle_in_startups(startups, startup_id, user_id)
    if isinstance(startups, dict) and isinstance(startups.get('results'), list):
        return {**startups, 'results': _toggle_in_startups(startups['results'], startup_id, user_id)}
    return startups


def list_contains(startups, startup_id):
    if isinstance(startups, dict):
        startups = startups.get('results')
    return isinstance(startups, list) and contains_id(startups, startup_id)
