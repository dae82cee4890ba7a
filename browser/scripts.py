"""
scripts.py

JavaScript snippets injected into the embedded login page.
Every value interpolated into a script goes through json.dumps.
Part of Chatflow — Business Messaging Client.
"""

import json

# Name of the page -> driver message channel
CHANNEL_NAME = "chatflowBridge"

MESSAGE_SUBMITTED = "submitted"
MESSAGE_FIELDS_NOT_FOUND = "fields not found"
MESSAGE_CLICKED = "clicked"
MESSAGE_CONTROL_NOT_FOUND = "control not found"

EMAIL_SELECTORS = (
    'input[type="email"]',
    'input[name="email"]',
    'input[id*="email" i]',
    'input[autocomplete="username"]',
)
PASSWORD_SELECTORS = (
    'input[type="password"]',
    'input[name="password"]',
)
SUBMIT_SELECTORS = (
    'button[type="submit"]',
    'input[type="submit"]',
    "form button",
)

_POST = (
    "function __post(type, status) {"
    f" var channel = window[{json.dumps(CHANNEL_NAME)}];"
    " if (typeof channel === 'function') {"
    " channel(JSON.stringify({type: type, status: status}));"
    " }"
    " }"
)


def credential_injection_script(email: str, password: str, settle_delay_ms: int = 500) -> str:
    """
    Build the script that fills and submits the provider login form.

    Values are written through the native HTMLInputElement value setter so
    framework-controlled inputs register the change, then input, change and
    blur events are dispatched. The form is submitted after settle_delay_ms.
    Reports MESSAGE_SUBMITTED or MESSAGE_FIELDS_NOT_FOUND on the channel.

    Args:
        email: Account email.
        password: Account password.
        settle_delay_ms: Pause between filling and submitting.

    Returns:
        The script source.
    """
    return f"""
(function() {{
  {_POST}
  function __first(selectors) {{
    for (var i = 0; i < selectors.length; i++) {{
      var el = document.querySelector(selectors[i]);
      if (el) return el;
    }}
    return null;
  }}
  function __fill(el, value) {{
    var setter = Object.getOwnPropertyDescriptor(window.HTMLInputElement.prototype, 'value').set;
    el.focus();
    setter.call(el, value);
    ['input', 'change', 'blur'].forEach(function(name) {{
      el.dispatchEvent(new Event(name, {{bubbles: true}}));
    }});
  }}
  try {{
    var emailInput = __first({json.dumps(list(EMAIL_SELECTORS))});
    var passwordInput = __first({json.dumps(list(PASSWORD_SELECTORS))});
    if (!emailInput || !passwordInput) {{
      __post('injection', {json.dumps(MESSAGE_FIELDS_NOT_FOUND)});
      return;
    }}
    __fill(emailInput, {json.dumps(email)});
    __fill(passwordInput, {json.dumps(password)});
    setTimeout(function() {{
      var submit = __first({json.dumps(list(SUBMIT_SELECTORS))});
      if (submit) {{
        submit.click();
      }} else if (passwordInput.form) {{
        passwordInput.form.submit();
      }}
      __post('injection', {json.dumps(MESSAGE_SUBMITTED)});
    }}, {int(settle_delay_ms)});
  }} catch (e) {{
    __post('injection', {json.dumps(MESSAGE_FIELDS_NOT_FOUND)});
  }}
}})();
true;
"""


def access_navigation_script(access_url: str) -> str:
    """Build the script that sends the page to the access-grant endpoint."""
    return f"window.location.href = {json.dumps(access_url)}; true;"


def provider_auto_click_script(label: str = "google") -> str:
    """
    Build the script that clicks the "continue with <label>" control.

    Reports MESSAGE_CLICKED or MESSAGE_CONTROL_NOT_FOUND on the channel.

    Args:
        label: Case-insensitive text identifying the control.
    """
    return f"""
(function() {{
  {_POST}
  var needle = {json.dumps(label.lower())};
  var candidates = document.querySelectorAll('a, button, [role="button"]');
  for (var i = 0; i < candidates.length; i++) {{
    var el = candidates[i];
    var text = ((el.innerText || '') + ' ' + (el.getAttribute('href') || '') + ' '
      + (el.getAttribute('aria-label') || '') + ' ' + (el.className || '')).toLowerCase();
    if (text.indexOf(needle) !== -1) {{
      el.click();
      __post('autoclick', {json.dumps(MESSAGE_CLICKED)});
      return;
    }}
  }}
  __post('autoclick', {json.dumps(MESSAGE_CONTROL_NOT_FOUND)});
}})();
true;
"""
