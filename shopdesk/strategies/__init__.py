"""Rule strategies run by the dispatcher for every classified message.

Modules:
    base              Strategy protocol and shared errors
    statistics        global and per-session message counters
    customer_behavior per-client behavior profiles and trait scoring
    auto_reply        intent/pattern rule matching and reply templating
"""
