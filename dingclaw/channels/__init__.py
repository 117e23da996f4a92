"""Chat channels bridging DingTalk robots and the message bus."""
