"""
channels — Push provider integration.

    credentials  — PushCredentials: signed assertion → cached access token
    fcm_push     — FcmPushChannel: one HTTPS call per device, outcome
                   classified as success / invalid token / transient

`FcmPushChannel.send` never raises; failures come back as DeviceDelivery.
"""
