#!/usr/bin/env python3
"""
DOM inspection scripts run through PageHandle.evaluate(script, args).

Every script is the source of a JS function taking one JSON `args` object
and returning JSON-serializable data. They only read the page unless the
name says otherwise (FILL_INPUT, CLEAR_INPUT, CLICK_*, EXPAND_THINKING).
"""

PING = "() => 1 + 1"

LOCATION = "() => window.location.href"

STOP_LOADING = "() => { window.stop(); return true; }"

# {url, challenge, login}
ACCESS_STATE = r'''(args) => {
    const url = window.location.href;
    const text = (document.body && document.body.innerText || '').toLowerCase();
    const challenge = /cloudflare|just a moment|checking your browser|verify you are human/.test(text);
    let login = /\/auth\/login|\/log-in/.test(url);
    if (!login && document.querySelector('input[type="email"], input[name="username"]')) {
        login = true;
    }
    if (!login) {
        for (const btn of document.querySelectorAll('button, a')) {
            const label = (btn.innerText || btn.textContent || '').trim().toLowerCase();
            if (label === 'log in' || label === 'sign up' || label === 'login'
                || label.includes('continue with google')
                || label.includes('continue with apple')
                || label.includes('continue with microsoft')) {
                const rect = btn.getBoundingClientRect();
                if (rect.width > 50 && rect.height > 30) { login = true; break; }
            }
        }
    }
    return {url: url, challenge: challenge, login: login};
}'''

# {x, y} center of the first visible match, or null
ELEMENT_CENTER = r'''(args) => {
    const el = document.querySelector(args.selector);
    if (!el) return null;
    el.scrollIntoView({block: 'center'});
    const r = el.getBoundingClientRect();
    if (r.width < 1 || r.height < 1) return null;
    return {x: r.x + r.width / 2, y: r.y + r.height / 2};
}'''

# Raw generation state. The Python side picks the target reply from it.
#   generating        visible stop/update control
#   continue_visible  "Continue generating" control present
#   window            turns numbered [from_turn, to_turn]: {turn, role, text, finished}
#                     (text is rebuilt as markdown so code blocks keep their fences)
#   last              last assistant element: {turn, role, text, finished, ordinal}
GENERATION_STATE = r'''(args) => {
    const isVisible = (el) => {
        if (!el) return false;
        const style = window.getComputedStyle(el);
        if (style.display === 'none' || style.visibility === 'hidden' || style.opacity === '0') {
            return false;
        }
        const rect = el.getBoundingClientRect();
        return rect.width > 0 && rect.height > 0;
    };
    const turnNumber = (el) => {
        const id = (el && el.getAttribute('data-testid')) || '';
        const match = id.match(/conversation-turn-(\d+)/);
        return match ? Number(match[1]) : null;
    };
    const finishedIn = (root) => {
        if (!root) return false;
        for (const sel of args.finished_selectors) {
            for (const el of root.querySelectorAll(sel)) {
                if (isVisible(el)) return true;
            }
        }
        return false;
    };
    // Markdown-ish text: code blocks keep their fences and language tag
    const replyText = (roleEl) => {
        const md = roleEl.querySelector('.markdown, [class*="markdown"], .prose');
        const container = md || roleEl;
        const parts = [];
        for (const el of container.children) {
            if (el.tagName === 'PRE') {
                const code = el.querySelector('code');
                if (code) {
                    let lang = '';
                    const m = (code.className || '').match(/language-(\w+)/);
                    if (m) lang = m[1];
                    parts.push('```' + lang + '\n' + code.innerText.trimEnd() + '\n```');
                    continue;
                }
            }
            const t = el.innerText ? el.innerText.trim() : '';
            if (t) parts.push(t);
        }
        return (parts.length > 0 ? parts.join('\n\n') : (container.innerText || '')).trim();
    };
    const describe = (container, roleEl) => ({
        turn: turnNumber(container),
        role: roleEl ? roleEl.getAttribute('data-message-author-role') : null,
        text: roleEl ? replyText(roleEl) : '',
        finished: finishedIn(container || (roleEl && roleEl.parentElement)),
    });

    let generating = false;
    for (const sel of args.stop_selectors) {
        if (Array.from(document.querySelectorAll(sel)).some(isVisible)) { generating = true; break; }
    }
    if (!generating) {
        for (const btn of document.querySelectorAll('button')) {
            if (!isVisible(btn)) continue;
            const label = (btn.getAttribute('aria-label') || btn.innerText || '').trim();
            if (/^(stop|update)\b/i.test(label)) { generating = true; break; }
        }
    }
    if (!generating && isVisible(document.querySelector('[data-writing-block]'))) {
        generating = true;
    }

    const continueVisible = Array.from(document.querySelectorAll('button'))
        .some((btn) => isVisible(btn) && /continue generating/i.test(btn.innerText || ''));

    const windowTurns = [];
    if (args.from_turn !== null && args.from_turn !== undefined) {
        for (const container of document.querySelectorAll('[data-testid^="conversation-turn-"]')) {
            const n = turnNumber(container);
            if (n === null || n < args.from_turn || n > args.to_turn) continue;
            const roleEl = container.matches('[data-message-author-role]')
                ? container : container.querySelector('[data-message-author-role]');
            windowTurns.push(describe(container, roleEl));
        }
    }

    let last = null;
    const replies = document.querySelectorAll('[data-message-author-role="assistant"]');
    if (replies.length) {
        const roleEl = replies[replies.length - 1];
        const container = roleEl.closest('[data-testid^="conversation-turn-"]');
        last = describe(container, roleEl);
        last.ordinal = replies.length - 1;
    }

    return {generating: generating, continue_visible: continueVisible, window: windowTurns, last: last};
}'''

# [{turn, role, text}] for every numbered turn in document order
TURNS = r'''(args) => {
    const results = [];
    for (const container of document.querySelectorAll('[data-testid^="conversation-turn-"]')) {
        const match = (container.getAttribute('data-testid') || '').match(/conversation-turn-(\d+)/);
        if (!match) continue;
        const roleEl = container.matches('[data-message-author-role]')
            ? container : container.querySelector('[data-message-author-role]');
        results.push({
            turn: Number(match[1]),
            role: roleEl ? roleEl.getAttribute('data-message-author-role') : null,
            text: roleEl ? (roleEl.innerText || '') : '',
        });
    }
    return results;
}'''

# [{turn, text}] for every user-role element, numbered or not
USER_MESSAGES = r'''(args) => {
    const results = [];
    for (const el of document.querySelectorAll('[data-message-author-role="user"]')) {
        const container = el.closest('[data-testid^="conversation-turn-"]');
        const match = container ? (container.getAttribute('data-testid') || '').match(/conversation-turn-(\d+)/) : null;
        results.push({turn: match ? Number(match[1]) : null, text: el.innerText || ''});
    }
    return results;
}'''

_FIND_INPUT = r'''
    const findInput = () => {
        for (const sel of args.selectors) {
            const el = document.querySelector(sel);
            if (el) return el;
        }
        return null;
    };
'''

# {found, editable}
PROMPT_INPUT_STATE = r'''(args) => {''' + _FIND_INPUT + r'''
    const el = findInput();
    if (!el) return {found: false, editable: false};
    if (el.tagName === 'TEXTAREA') return {found: true, editable: !el.disabled};
    return {
        found: true,
        editable: el.getAttribute('contenteditable') !== 'false' && el.getAttribute('aria-disabled') !== 'true',
    };
}'''

# {found, value}
PROMPT_INPUT_VALUE = r'''(args) => {''' + _FIND_INPUT + r'''
    const el = findInput();
    if (!el) return {found: false, value: ''};
    const value = el.tagName === 'TEXTAREA' ? el.value : (el.innerText || '');
    return {found: true, value: value};
}'''

FOCUS_INPUT = r'''(args) => {''' + _FIND_INPUT + r'''
    const el = findInput();
    if (!el) return false;
    el.focus();
    return true;
}'''

CLEAR_INPUT = r'''(args) => {''' + _FIND_INPUT + r'''
    const el = findInput();
    if (!el) return false;
    el.focus();
    if (el.tagName === 'TEXTAREA') {
        el.value = '';
        el.dispatchEvent(new Event('input', {bubbles: true}));
        return true;
    }
    while (el.firstChild) { el.removeChild(el.firstChild); }
    el.dispatchEvent(new InputEvent('input', {bubbles: true, inputType: 'deleteContentBackward'}));
    return true;
}'''

# Fast path: write the whole prompt at once, one <p> per line for ProseMirror
FILL_INPUT = r'''(args) => {''' + _FIND_INPUT + r'''
    const el = findInput();
    if (!el) return false;
    el.focus();
    if (el.tagName === 'TEXTAREA') {
        el.value = args.text;
        el.dispatchEvent(new Event('input', {bubbles: true}));
        return true;
    }
    while (el.firstChild) { el.removeChild(el.firstChild); }
    for (const line of args.text.split('\n')) {
        const p = document.createElement('p');
        if (line) { p.textContent = line; } else { p.appendChild(document.createElement('br')); }
        el.appendChild(p);
    }
    el.dispatchEvent(new InputEvent('input', {
        bubbles: true, cancelable: true, inputType: 'insertText', data: args.text,
    }));
    return true;
}'''

# {found, enabled}
SEND_BUTTON_STATE = r'''(args) => {
    for (const sel of args.selectors) {
        const btn = document.querySelector(sel);
        if (btn) {
            return {found: true, enabled: !btn.disabled && btn.getAttribute('aria-disabled') !== 'true'};
        }
    }
    return {found: false, enabled: false};
}'''

CLICK_SEND = r'''(args) => {
    let target = null;
    for (const sel of args.selectors) {
        target = document.querySelector(sel);
        if (target) break;
    }
    if (!target) {
        for (const btn of document.querySelectorAll('button')) {
            const label = (btn.getAttribute('aria-label') || '').toLowerCase();
            const testId = btn.getAttribute('data-testid') || '';
            if (label.includes('send') || testId.includes('send')) { target = btn; break; }
        }
    }
    if (!target || target.disabled || target.getAttribute('aria-disabled') === 'true') return false;
    target.click();
    return true;
}'''

CLICK_CONTINUE = r'''(args) => {
    for (const btn of document.querySelectorAll('button')) {
        if (/continue generating/i.test(btn.innerText || '') && !btn.disabled) {
            btn.click();
            return true;
        }
    }
    return false;
}'''


# Attachment chips rendered in the composer after an upload
ATTACHMENT_COUNT = r'''(args) => {
    return document.querySelectorAll(
        '[data-testid*="attachment"], [class*="attachment"], [class*="file-chip"], ' +
        'img[alt*="Uploaded"], form [class*="thumbnail"], form [class*="preview"]'
    ).length;
}'''


_FIND_THINKING = r'''
    const replies = document.querySelectorAll('[data-message-author-role="assistant"]');
    const last = replies.length ? replies[replies.length - 1] : null;
    const turn = last ? (last.closest('[data-testid^="conversation-turn-"]') || last.parentElement) : null;
    const findToggle = () => {
        if (!turn) return null;
        for (const el of turn.querySelectorAll('button, span')) {
            const label = (el.textContent || '').trim();
            if (label.length < 50 && /^(thought for |thinking|pro thinking|reasoned|reasoning)/i.test(label)) {
                return el.closest('button') || el;
            }
        }
        return null;
    };
'''

# {found, expanded, label, text} for the reasoning panel of the last reply
THINKING_CONTENT = r'''(args) => {''' + _FIND_THINKING + r'''
    const toggle = findToggle();
    if (!toggle) return {found: false, expanded: false, label: '', text: ''};
    const label = (toggle.textContent || '').trim();
    const answer = last.querySelector('.markdown, [class*="markdown"]');
    let panel = null;
    for (let el = toggle.parentElement; el && el !== turn; el = el.parentElement) {
        if (answer && el.contains(answer)) break;
        panel = el;
    }
    let text = panel ? (panel.innerText || '').trim() : '';
    if (text.startsWith(label)) text = text.slice(label.length).trim();
    const expanded = toggle.getAttribute('aria-expanded') !== 'false' && text.length > 0;
    return {found: true, expanded: expanded, label: label, text: text};
}'''

EXPAND_THINKING = r'''(args) => {''' + _FIND_THINKING + r'''
    const toggle = findToggle();
    if (!toggle) return false;
    if (toggle.getAttribute('aria-expanded') !== 'true') toggle.click();
    return true;
}'''
