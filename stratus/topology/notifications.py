"""
SnsNotificationStack: topic receiving service metric alarms.
"""

from stratus.config import DeploymentConfig
from stratus.core import App, Stack

NOTIFICATION_STACK = "SnsNotificationStack"


def declare_notification_stack(app: App, config: DeploymentConfig) -> Stack:
    notifications = config.notifications
    stack = app.declare_stack(
        NOTIFICATION_STACK,
        config=notifications.model_dump(),
        tags={"application-name": "SnsNotification"},
        description="Metrics notification topic",
    )

    subscriptions = []
    if notifications.email:
        subscriptions.append({"Protocol": "email", "Endpoint": notifications.email})

    topic = stack.resource("NotificationTopic", "AWS::SNS::Topic", {
        "TopicName": notifications.topic_name,
        "Subscription": subscriptions,
    })
    stack.export(
        "NotificationTopicArn",
        topic.ref,
        description=f"ARN of {notifications.topic_name} SNS Topic",
    )
    return stack
