"""Event names pushed to live connections. Clients switch on the `type` key."""

CONNECTION_SUCCESS = 'connection.success'
PONG = 'pong'
ERROR = 'error'

MESSAGE_SENT = 'chat.message.sent'
MESSAGE_NEW = 'chat.message.new'
MESSAGE_STATUS = 'chat.message.status'
CONVERSATION_DELETED = 'chat.conversation.deleted'

CALL_INITIATED = 'call.initiated'
CALL_INITIATE = 'call.initiate'
CALL_ACCEPT = 'call.accept'
CALL_REJECT = 'call.reject'
CALL_JOIN = 'call.join'
CALL_LEAVE = 'call.leave'
CALL_END = 'call.end'

WEBRTC_OFFER = 'webrtc.offer'
WEBRTC_ANSWER = 'webrtc.answer'
WEBRTC_ICE_CANDIDATE = 'webrtc.ice_candidate'

NOTIFICATION = 'notification'
