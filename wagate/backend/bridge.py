"""Script injected into the WhatsApp Web page once the client has loaded.

It exposes ``window.WAGate`` (commands run against the web client's internal
module store) and pushes new messages and socket state changes back to Python
through the ``__wagateEmit`` binding.
"""

BINDING_NAME = "__wagateEmit"

STORE_READY_CHECK = """() => typeof window.require === 'function' && (() => {
  try { return !!window.require('WAWebCollections').Chat; } catch (e) { return false; }
})()"""

LOGGED_IN_SELECTORS = ['[data-testid="chat-list"]', "#pane-side", 'div[data-tab="3"]']
QR_SELECTOR = "div[data-ref]"

BRIDGE_SCRIPT = """() => {
  if (window.WAGate) return true;
  const req = (name) => window.require(name);
  const col = () => req('WAWebCollections');
  const sid = (w) => (w && w._serialized) ? w._serialized : (w ? String(w) : null);

  const serialize = (m) => ({
    id: sid(m.id),
    from: sid(m.from),
    to: sid(m.to),
    author: sid(m.author),
    body: m.body || m.caption || '',
    quotedId: m.quotedStanzaID || null,
    timestamp: m.t || null,
    fromMe: !!(m.id && m.id.fromMe),
  });

  const chatFor = async (chatId) => {
    const wid = req('WAWebWidFactory').createWid(chatId);
    const existing = col().Chat.get(wid);
    if (existing) return existing;
    const found = await req('WAWebFindChatAction').findOrCreateLatestChat(wid);
    return found.chat;
  };

  const lastOwnId = (chat) => {
    const own = chat.msgs.getModelsArray().filter((m) => m.id.fromMe);
    return own.length ? sid(own[own.length - 1].id) : null;
  };

  window.WAGate = {
    state: () => req('WAWebSocketModel').Socket.state,
    info: () => {
      const conn = req('WAWebConnModel').Conn;
      const me = req('WAWebUserPrefsMeUser').getMaybeMeUser();
      return { wid: sid(me), pushname: conn.pushname || '', platform: conn.platform || '' };
    },
    sendText: async (chatId, text, quotedId) => {
      const chat = await chatFor(chatId);
      const opts = {};
      if (quotedId) {
        const quoted = col().Msg.get(quotedId);
        if (quoted) opts.quotedMsg = quoted;
      }
      await req('WAWebSendTextMsgChatAction').sendTextMsgToChat(chat, text, opts);
      return lastOwnId(chat);
    },
    openChat: async (chatId) => {
      const chat = await chatFor(chatId);
      await req('WAWebCmd').Cmd.openChatBottom(chat);
      return true;
    },
    lastOwnMessage: async (chatId) => lastOwnId(await chatFor(chatId)),
    getMessage: (id) => {
      const m = col().Msg.get(id);
      return m ? serialize(m) : null;
    },
    forward: async (id, toChatId) => {
      const m = col().Msg.get(id);
      if (!m) throw new Error('Message not found: ' + id);
      const chat = await chatFor(toChatId);
      await req('WAWebForwardMessagesToChat').forwardMessagesToChats([m], [chat], true);
      return true;
    },
    chats: () => col().Chat.getModelsArray().map((c) => {
      const last = c.msgs.last();
      return {
        id: sid(c.id),
        name: c.formattedTitle || c.name || '',
        isGroup: !!c.isGroup,
        participants: c.isGroup && c.groupMetadata ? c.groupMetadata.participants.length : 1,
        lastMessage: last && last.body ? String(last.body).substring(0, 50) : '',
        timestamp: c.t || null,
      };
    }),
    clearChat: async (chatId) => {
      const chat = await chatFor(chatId);
      await req('WAWebCmd').Cmd.sendClear(chat, true);
      return true;
    },
    logout: async () => {
      await req('WAWebSocketModel').Socket.logout();
      return true;
    },
  };

  col().Msg.on('add', (m) => {
    if (!m.isNewMsg || (m.id && m.id.fromMe)) return;
    window.__wagateEmit('message', serialize(m));
  });
  req('WAWebSocketModel').Socket.on('change:state', (_socket, state) => {
    window.__wagateEmit('change_state', state);
  });
  return true;
}"""
