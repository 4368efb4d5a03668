from carrier_service.messaging import (
    CARRIER_REVERIFICATION_TRIGGERS_TOPIC,
    CARRIER_VERIFICATION_RESULTS_TOPIC,
)

TOPICS = {
    CARRIER_VERIFICATION_RESULTS_TOPIC: {
        "partitions": 6,
        "replication_factor": 3,
        "retention_ms": 2592000000,
    },
    CARRIER_REVERIFICATION_TRIGGERS_TOPIC: {
        "partitions": 1,
        "replication_factor": 3,
        "retention_ms": 604800000,
    },
}
